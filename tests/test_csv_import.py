# tests/test_csv_import.py
"""
Tests for bulk CSV import of operator-supplied evidence.
"""
from __future__ import annotations

import io
from datetime import datetime, timezone

import pandas as pd
import pytest

from evidence_engine.csv_import import TEMPLATE_COLUMNS, CsvImporter, write_csv_template
from evidence_engine.models import ConnectorConfig

from conftest import make_record

HEADER = ",".join(TEMPLATE_COLUMNS)


def source(source_id: str = "rak-ceramics-uae") -> ConnectorConfig:
    return ConnectorConfig(
        source_id=source_id,
        source_name="RAK Ceramics UAE",
        source_url="https://www.rakceramics.com/ae/",
    )


def csv(*rows: str, header: str = HEADER) -> io.StringIO:
    return io.StringIO("\n".join([header, *rows]) + "\n")


class TestTemplate:

    def test_template_has_header_and_sample(self):
        text = write_csv_template()
        assert text.splitlines()[0] == HEADER
        assert "Sample Tile 60x60" in text

    def test_template_to_file(self, tmp_path):
        path = tmp_path / "template.csv"
        write_csv_template(str(path))
        assert list(pd.read_csv(path).columns) == TEMPLATE_COLUMNS


class TestImport:

    async def test_valid_rows(self, store):
        result = await CsvImporter(store, source()).import_file(csv(
            'Calacatta Gold,material_cost,Dubai,Price per SQM,"1,250.50",sqm,2026-02-01,"tiles, marble",Showroom quote',
            "Grout 5kg,,,,85,,,,",
        ))

        assert (result.total_rows, result.success_count, result.skipped_count) == (2, 2, 0)
        first, second = store.evidence
        assert first.item_name == "Calacatta Gold"
        assert first.price_typical == 1250.5
        assert first.geography == "Dubai"
        assert first.title == "Price per SQM"
        assert first.capture_date == datetime(2026, 2, 1, tzinfo=timezone.utc)
        assert first.tags == ["tiles", "marble"]
        assert first.reliability_grade == "B"
        assert first.confidence_score == 70
        assert first.extracted_snippet == "Uploaded Data: Showroom quote"
        assert first.notes.startswith("Uploaded via CSV bulk tool. Row context:")
        assert first.record_id.startswith("EV-CSV-")

        assert second.unit == "unit"
        assert second.category == "material_cost"
        assert second.geography == "UAE"
        assert second.extracted_snippet == "Bulk uploaded value for Grout 5kg"

    async def test_bad_rows_are_reported_by_line(self, store):
        result = await CsvImporter(store, source()).import_file(csv(
            ",material_cost,,,10,,,,",
            "Tile,material_cost,,,not-a-number,,,,",
            "Tile,material_cost,,,12,,,,",
        ))

        assert result.success_count == 1
        assert result.skipped_count == 2
        assert result.errors == [
            "Row 2: Missing Item Name/Title",
            "Row 3: Invalid or missing numeric Value",
        ]

    async def test_alias_columns(self, store):
        await CsvImporter(store, source()).import_file(csv("Hinge,12.5", header="Title,Price"))
        assert store.evidence[0].item_name == "Hinge"
        assert store.evidence[0].price_typical == 12.5

    async def test_grade_a_source_gets_higher_confidence(self, store):
        await CsvImporter(store, source("emaar-properties")).import_file(csv("Villa,,,,1500,sqft,,,"))
        assert store.evidence[0].confidence_score == 90

    async def test_unparseable_date_falls_back_to_now(self, store):
        await CsvImporter(store, source()).import_file(csv("Tile,,,,12,,someday,,"))
        assert store.evidence[0].capture_date.year >= 2026

    async def test_errors_are_capped(self, store):
        rows = [",,,,1,,,," for _ in range(15)]
        result = await CsvImporter(store, source()).import_file(csv(*rows))
        assert result.skipped_count == 15
        assert len(result.errors) == 10

    async def test_header_only_is_rejected(self, store):
        with pytest.raises(ValueError, match="No data found"):
            await CsvImporter(store, source()).import_file(csv())

    async def test_price_change_detected_on_import(self, store):
        await store.create_evidence_record(make_record("Calacatta Gold", 100.0, days_ago=30))
        await CsvImporter(store, source()).import_file(csv("Calacatta Gold,,,,120,sqm,2026-02-01,,"))

        assert len(store.price_changes) == 1
        assert store.price_changes[0].severity == "significant"
