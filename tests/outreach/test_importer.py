import json
import tempfile
from pathlib import Path

import pytest
from openpyxl import Workbook

from outflow.core.db import get_lead_by_email, get_leads_by_status, init_db
from outflow.outreach.importer import create_example_excel, import_leads


def test_import_leads_from_excel():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        db_path = tmpdir / "test.db"
        excel_path = tmpdir / "leads.xlsx"

        # Create test Excel file
        wb = Workbook()
        ws = wb.active
        ws.append(["email", "first_name", "last_name", "company", "title", "linkedin_url"])
        ws.append(["alice@test.com", "Alice", "Smith", "Acme", "CEO", "https://linkedin.com/in/alice"])
        ws.append(["bob@test.com", "Bob", "Jones", "Beta Inc", "CTO", "https://linkedin.com/in/bob"])
        wb.save(excel_path)

        init_db(db_path)
        result = import_leads(excel_path, db_path)

        assert result["imported"] == 2
        assert result["skipped"] == 0
        assert len(result["lead_ids"]) == 2

        leads = get_leads_by_status(db_path, "new")
        assert len(leads) == 2


def test_import_skips_duplicates():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        db_path = tmpdir / "test.db"
        excel_path = tmpdir / "leads.xlsx"

        wb = Workbook()
        ws = wb.active
        ws.append(["email", "first_name", "last_name", "company", "title", "linkedin_url"])
        ws.append(["same@test.com", "First", "", "", "", ""])
        ws.append(["Same@Test.com ", "Second", "", "", "", ""])  # Duplicate
        ws.append(["noname@test.com", None, "", "", "", ""])
        wb.save(excel_path)

        init_db(db_path)
        result = import_leads(excel_path, db_path)

        assert result["imported"] == 1
        assert result["skipped"] == 2


def test_import_keeps_extra_columns_as_custom_fields():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        db_path = tmpdir / "test.db"
        excel_path = tmpdir / "leads.xlsx"

        wb = Workbook()
        ws = wb.active
        ws.append(["Email", "First_Name", "Score", "Segment"])
        ws.append(["ada@acme.co", "Ada", 42, "enterprise"])
        wb.save(excel_path)

        init_db(db_path)
        import_leads(excel_path, db_path)

        lead = get_lead_by_email(db_path, "ada@acme.co")
        assert json.loads(lead["custom_fields"]) == {"score": 42, "segment": "enterprise"}


def test_import_requires_email_and_first_name():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        excel_path = tmpdir / "leads.xlsx"

        wb = Workbook()
        wb.active.append(["email", "company"])
        wb.save(excel_path)

        with pytest.raises(ValueError):
            import_leads(excel_path, tmpdir / "test.db")


def test_create_example_excel_is_importable():
    with tempfile.TemporaryDirectory() as tmpdir:
        tmpdir = Path(tmpdir)
        db_path = tmpdir / "test.db"
        excel_path = tmpdir / "example.xlsx"

        create_example_excel(excel_path)
        init_db(db_path)
        result = import_leads(excel_path, db_path)

        assert result["imported"] == 2
