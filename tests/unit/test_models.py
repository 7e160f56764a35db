from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from delivery_sync.domain.models import Predicate, QueryFilter, QueryResult, Record
from delivery_sync.domain.status import RecordStatus

PAGE_SIZE = 2


def _record(record_id: str, created_minute: int) -> Record:
    return Record(
        id=record_id,
        table="deliveries",
        fields={"dr_number": f"DR-{record_id}"},
        created_at=datetime(2024, 1, 1, 0, created_minute, tzinfo=timezone.utc),
    )


def test_cache_key_is_independent_of_predicate_order() -> None:
    first = QueryFilter.build("deliveries", {"ref": "DR-1", "status": "Active"})
    second = QueryFilter.build("deliveries", {"status": "Active", "drNumber": "DR-1"})

    assert first == second
    assert first.cache_key() == second.cache_key()
    assert first.cache_key().startswith("deliveries:")


def test_cache_key_differs_by_options() -> None:
    base = QueryFilter(table="deliveries", order_by="created_at", limit=10)

    assert base.cache_key() != base.model_copy(update={"limit": 20}).cache_key()
    assert base.cache_key() != QueryFilter(table="customers", order_by="created_at", limit=10).cache_key()


def test_predicate_field_is_canonical() -> None:
    assert Predicate(field="customerName", value="Acme").field == "customer_name"


def test_in_predicate_requires_list() -> None:
    with pytest.raises(PydanticValidationError):
        Predicate(field="status", op="in", value="Active")


def test_cursor_requires_order_by() -> None:
    with pytest.raises(PydanticValidationError):
        QueryFilter(table="deliveries", cursor="x")


def test_next_page_uses_last_record_as_cursor() -> None:
    page = QueryFilter(table="deliveries", order_by="createdAt", descending=False, limit=PAGE_SIZE)
    records = [_record("1", 1), _record("2", 2)]

    following = page.next_page(records)

    assert following is not None
    assert following.order_by == "created_at"
    assert following.cursor == records[-1].created_at
    assert page.next_page(records[:1]) is None


def test_next_page_requires_order_and_limit() -> None:
    with pytest.raises(ValueError):
        QueryFilter(table="deliveries").next_page([])


def test_record_view_and_value() -> None:
    record = Record(
        id="7",
        table="deliveries",
        fields={"dr_number": "DR-7", "customer_name": "Acme"},
        status=RecordStatus.ON_SCHEDULE,
    )

    assert record.value("status") == "OnSchedule"
    assert record.value("customer_name") == "Acme"
    assert not record.pending
    view = record.to_view()
    assert view["drNumber"] == "DR-7"
    assert view["status"] == "OnSchedule"
    assert view["id"] == "7"


def test_query_result_behaves_like_a_sequence() -> None:
    records = (_record("1", 1), _record("2", 2))
    result = QueryResult(records=records, stale=True)

    assert len(result) == 2
    assert result[0].id == "1"
    assert [r.id for r in result] == ["1", "2"]
    assert result.stale
