"""
Demo data seeding script for delivery-sync.

Generates deterministic pseudo-random customers and deliveries, writes them
to CSV and loads them into Postgres with COPY. Expects the schema from
`db/init.sql`.
"""

from __future__ import annotations

import csv
import json
import random
import sys
import tempfile
import time
from datetime import date, timedelta
from pathlib import Path

import psycopg
import typer

from delivery_sync.domain.status import RecordStatus
from delivery_sync.infrastructure.factory import build_dsn

app = typer.Typer(help="Generate demo customers/deliveries and load into Postgres (CSV + COPY).")

CUSTOMER_COLUMNS = ["name", "phone", "contact_person", "email", "account_type", "status", "bookings_count"]
DELIVERY_COLUMNS = [
    "dr_number",
    "customer_name",
    "vendor_number",
    "origin",
    "destination",
    "truck_type",
    "truck_plate_number",
    "status",
    "delivery_date",
    "additional_cost_items",
]

_CITIES = ["Manila", "Quezon City", "Cebu", "Davao", "Batangas", "Laguna", "Pampanga", "Iloilo"]
_TRUCKS = ["10W", "6W", "4W", "Trailer"]
_COMPANIES = ["Acme", "Northwind", "Globex", "Initech", "Umbrella", "Stark", "Wayne", "Hooli"]
_COST_CATEGORIES = ["Fuel", "Toll", "Helper", "Other"]


def _build_dsn(dsn_override: str | None) -> str:
    if dsn_override:
        return dsn_override
    return build_dsn()


def _customer_names(count: int) -> list[str]:
    return [f"{_COMPANIES[i % len(_COMPANIES)]} Trading {i + 1:04d}" for i in range(count)]


def _generate_customers_csv(csv_path: Path, names: list[str], rng: random.Random) -> None:
    with csv_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CUSTOMER_COLUMNS)
        for name in names:
            slug = name.lower().replace(" ", ".")
            writer.writerow(
                [
                    name,
                    f"+63 9{rng.randint(10, 99)} {rng.randint(100, 999)} {rng.randint(1000, 9999)}",
                    f"Contact {rng.randint(1, 500)}",
                    f"{slug}@example.com",
                    rng.choice(["Individual", "Corporate", "Government"]),
                    "active",
                    0,
                ]
            )


def _generate_deliveries_csv(
    csv_path: Path, rows: int, names: list[str], rng: random.Random, batch_size: int
) -> None:
    statuses = [status.value for status in RecordStatus]
    today = date.today()
    with csv_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(DELIVERY_COLUMNS)

        buffer: list[list[str]] = []
        for i in range(rows):
            origin, destination = rng.sample(_CITIES, 2)
            costs = [
                {
                    "description": f"{category} charge",
                    "amount": round(rng.uniform(100, 5_000), 2),
                    "category": category,
                }
                for category in rng.sample(_COST_CATEGORIES, rng.randint(0, 2))
            ]
            buffer.append(
                [
                    f"DR-{i + 1:06d}",
                    rng.choice(names),
                    f"V-{rng.randint(1000, 9999)}",
                    origin,
                    destination,
                    rng.choice(_TRUCKS),
                    f"{rng.choice('ABCDEFGH')}{rng.choice('ABCDEFGH')}{rng.choice('ABCDEFGH')} {rng.randint(100, 9999)}",
                    rng.choice(statuses),
                    (today - timedelta(days=rng.randint(0, 90))).isoformat(),
                    json.dumps(costs) if costs else "",
                ]
            )
            if len(buffer) >= batch_size:
                writer.writerows(buffer)
                buffer.clear()
        if buffer:
            writer.writerows(buffer)


def _copy_into_db(dsn: str, table: str, columns: list[str], csv_path: Path) -> None:
    with psycopg.connect(dsn) as conn:
        with conn.cursor() as cur:
            with cur.copy(
                f"COPY public.{table} ({', '.join(columns)}) FROM STDIN WITH (FORMAT csv, HEADER TRUE)"
            ) as copy:
                with csv_path.open("r", encoding="utf-8") as f:
                    for line in f:
                        copy.write(line)
            conn.commit()


@app.command()
def main(
    deliveries: int = typer.Option(
        1_000,
        "--deliveries",
        "-d",
        help="Number of deliveries to generate.",
    ),
    customers: int = typer.Option(
        50,
        "--customers",
        "-c",
        help="Number of customers to generate.",
    ),
    batch_size: int = typer.Option(
        1_000,
        "--batch-size",
        "-b",
        help="Batch size for CSV buffering during generation.",
    ),
    seed: int = typer.Option(
        42,
        "--seed",
        help="Deterministic RNG seed.",
    ),
    output_dir: Path | None = typer.Option(
        None,
        "--output-dir",
        "-o",
        help="Optional directory for the CSV files (if omitted, a temp dir will be used).",
    ),
    dsn: str | None = typer.Option(
        None,
        "--dsn",
        help="Optional DSN override for Postgres.",
    ),
    no_load: bool = typer.Option(
        False,
        "--no-load",
        help="Only generate CSV; skip loading into Postgres.",
    ),
) -> None:
    """
    Generate demo data and optionally load it into Postgres using COPY.
    """
    start = time.perf_counter()
    if output_dir:
        output_dir.mkdir(parents=True, exist_ok=True)
    else:
        output_dir = Path(tempfile.mkdtemp(prefix="delivery_sync_seed_"))
    customers_csv = output_dir / "customers.csv"
    deliveries_csv = output_dir / "deliveries.csv"

    rng = random.Random(seed)
    names = _customer_names(customers)
    typer.echo(f"Generating {customers:,} customers and {deliveries:,} deliveries -> {output_dir} (seed={seed})")
    _generate_customers_csv(customers_csv, names, rng)
    _generate_deliveries_csv(deliveries_csv, deliveries, names, rng, batch_size)
    typer.echo(f"CSV generation completed in {time.perf_counter() - start:.2f}s")

    if no_load:
        typer.echo("Skipping load (no-load flag set).")
        return

    load_start = time.perf_counter()
    conn_dsn = _build_dsn(dsn)
    typer.echo("Loading CSV into Postgres via COPY...")
    _copy_into_db(conn_dsn, "customers", CUSTOMER_COLUMNS, customers_csv)
    _copy_into_db(conn_dsn, "deliveries", DELIVERY_COLUMNS, deliveries_csv)
    typer.echo(
        f"Load completed in {time.perf_counter() - load_start:.2f}s. "
        f"Total time {time.perf_counter() - start:.2f}s."
    )


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
