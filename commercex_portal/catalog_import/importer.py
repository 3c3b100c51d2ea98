"""Catalog import for storefront products.

Usage:
  commercex-import --file products.xlsx --mongo-uri mongodb://localhost:27017/ --db commercex_db
"""

from __future__ import annotations

import argparse
import json
import os
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import pandas as pd
from dotenv import load_dotenv
from pymongo import MongoClient

REQUIRED_COLUMNS = ["title", "category", "regular_price", "stock_quantity"]


@dataclass
class ImportRowError:
    row_number: int
    message: str


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(value).strip().lower())
    return slug.strip("-")


class CatalogImporter:
    def __init__(self, products_collection: Any) -> None:
        self.products = products_collection

    def run(self, source: Any, dry_run: bool = False, filename: str | None = None) -> dict[str, Any]:
        """Import from a path, or from a file-like object when `filename` gives its type."""
        frame = self._load_file(source, filename)
        errors = self._validate_frame(frame)
        if errors:
            return {
                "ok": False,
                "created": 0,
                "updated": 0,
                "skipped": len(errors),
                "errors": [f"Row {e.row_number}: {e.message}" for e in errors],
            }

        if dry_run:
            return {"ok": True, "created": len(frame), "updated": 0, "skipped": 0, "errors": []}

        return self._persist(frame)

    def _load_file(self, source: Any, filename: str | None = None) -> pd.DataFrame:
        if filename is None:
            path = Path(source)
            if not path.exists():
                raise FileNotFoundError(f"File not found: {source}")
            filename = path.name
            source = path

        suffix = Path(filename).suffix.lower()
        if suffix == ".csv":
            frame = pd.read_csv(source, dtype=str)
        elif suffix == ".xlsx":
            frame = pd.read_excel(source, dtype=str)
        else:
            raise ValueError("Only CSV/XLSX files are supported")

        frame.columns = [str(column).strip().lower() for column in frame.columns]
        return frame.fillna("")

    def _validate_frame(self, frame: pd.DataFrame) -> list[ImportRowError]:
        errors: list[ImportRowError] = []

        for column in REQUIRED_COLUMNS:
            if column not in frame.columns:
                errors.append(ImportRowError(1, f"Missing required column '{column}'"))

        if errors:
            return errors

        seen_slugs: set[str] = set()
        for index, row in frame.iterrows():
            row_number = index + 2
            missing = [c for c in REQUIRED_COLUMNS if str(row[c]).strip() == ""]
            for column in missing:
                errors.append(ImportRowError(row_number, f"'{column}' cannot be empty"))
            if missing:
                continue

            try:
                regular_price = self._to_decimal(row["regular_price"])
                discount_price = self._optional_decimal(row.get("discount_price", ""))
                stock = self._to_decimal(row["stock_quantity"])
            except ValueError as exc:
                errors.append(ImportRowError(row_number, str(exc)))
                continue

            if discount_price is not None and discount_price > regular_price:
                errors.append(ImportRowError(row_number, "discount_price cannot be greater than regular_price"))
            if stock != stock.to_integral_value():
                errors.append(ImportRowError(row_number, "stock_quantity must be a whole number"))

            slug = self._row_slug(row)
            if not slug:
                errors.append(ImportRowError(row_number, "Could not derive a slug from the title"))
            elif slug in seen_slugs:
                errors.append(ImportRowError(row_number, f"Duplicate slug '{slug}' in file"))
            seen_slugs.add(slug)

        return errors

    @staticmethod
    def _to_decimal(value: Any) -> Decimal:
        try:
            number = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValueError(f"Invalid numeric value '{value}'")

        if not number.is_finite():
            raise ValueError(f"Invalid numeric value '{value}'")
        if number < 0:
            raise ValueError("Numeric values cannot be negative")
        return number

    def _optional_decimal(self, value: Any) -> Decimal | None:
        if str(value).strip() == "":
            return None
        return self._to_decimal(value)

    @staticmethod
    def _row_slug(row: pd.Series) -> str:
        return slugify(str(row.get("slug", "")).strip() or str(row["title"]))

    def _persist(self, frame: pd.DataFrame) -> dict[str, Any]:
        created = 0
        updated = 0
        now = datetime.utcnow()

        for _, row in frame.iterrows():
            payload = self._map_row(row)
            payload["updated_at"] = now
            result = self.products.update_one(
                {"slug": payload["slug"]},
                {
                    "$set": payload,
                    "$setOnInsert": {
                        "is_active": True,
                        "is_deleted": False,
                        "deleted_at": None,
                        "variations": [],
                        "created_at": now,
                    },
                },
                upsert=True,
            )
            if result.upserted_id is not None:
                created += 1
            else:
                updated += 1

        return {"ok": True, "created": created, "updated": updated, "skipped": 0, "errors": []}

    def _map_row(self, row: pd.Series) -> dict[str, Any]:
        images = [img.strip() for img in str(row.get("images", "")).split("|") if img.strip()]
        image_url = str(row.get("image_url", "")).strip() or (images[0] if images else "")
        discount_price = self._optional_decimal(row.get("discount_price", ""))

        return {
            "title": str(row["title"]).strip(),
            "slug": self._row_slug(row),
            "category": str(row["category"]).strip(),
            "description": str(row.get("description", "")).strip(),
            "regular_price": float(self._to_decimal(row["regular_price"])),
            "discount_price": float(discount_price) if discount_price is not None else None,
            "stock_quantity": int(self._to_decimal(row["stock_quantity"])),
            "image_url": image_url,
            "images": images,
        }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import storefront products from CSV/XLSX")
    parser.add_argument("--file", required=True, help="Path to CSV/XLSX file")
    parser.add_argument("--mongo-uri", default=os.getenv("MONGODB_URI", "mongodb://localhost:27017/"),
                        help="MongoDB connection URI")
    parser.add_argument("--db", default=os.getenv("MONGODB_DB", "commercex_db"), help="Database name")
    parser.add_argument("--dry-run", action="store_true", help="Validate only, skip database writes")
    return parser.parse_args()


def main() -> None:
    load_dotenv()
    args = parse_args()
    client = MongoClient(args.mongo_uri)
    importer = CatalogImporter(client[args.db]["products"])

    try:
        result = importer.run(args.file, dry_run=args.dry_run)
    except Exception as exc:
        print(json.dumps({"ok": False, "errors": [str(exc)]}, indent=2))
        raise SystemExit(1)
    finally:
        client.close()

    print(json.dumps(result, indent=2, default=str))
    if not result["ok"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
