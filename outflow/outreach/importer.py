"""Excel lead importer."""

from pathlib import Path

import structlog
from openpyxl import Workbook, load_workbook

from outflow.core.db import DEFAULT_DB_PATH, insert_lead

log = structlog.get_logger()

OPTIONAL_COLUMNS = ("last_name", "company", "title", "linkedin_url")


def _cell(row: tuple, col_map: dict, name: str):
    idx = col_map.get(name)
    if idx is None or idx >= len(row):
        return None
    value = row[idx]
    return value.strip() if isinstance(value, str) else value


def import_leads(excel_path: Path, db_path: Path = DEFAULT_DB_PATH) -> dict:
    """Import leads from Excel file.

    Expected columns: email, first_name, last_name, company, title, linkedin_url.
    Any other column is stored as a custom field and becomes a workflow variable.

    Returns dict with imported and skipped counts and the new lead ids.
    """
    wb = load_workbook(excel_path)
    ws = wb.active

    # Get header row
    headers = [str(cell.value).lower().strip() if cell.value else "" for cell in ws[1]]

    required = {"email", "first_name"}
    if not required.issubset(set(headers)):
        raise ValueError(f"Excel must have columns: {required}. Found: {headers}")

    # Map column indices
    col_map = {name: idx for idx, name in enumerate(headers) if name}
    custom_columns = [name for name in col_map if name not in required and name not in OPTIONAL_COLUMNS]

    imported = 0
    skipped = 0
    lead_ids = []

    for row in ws.iter_rows(min_row=2, values_only=True):
        email = _cell(row, col_map, "email")
        if not email:
            continue

        email = str(email).lower()
        first_name = _cell(row, col_map, "first_name")

        if not first_name:
            log.warning("skipping_row_no_first_name", email=email)
            skipped += 1
            continue

        custom_fields = {
            name: _cell(row, col_map, name)
            for name in custom_columns
            if _cell(row, col_map, name) is not None
        }

        lead_id = insert_lead(
            db_path=db_path,
            email=email,
            first_name=str(first_name),
            last_name=_cell(row, col_map, "last_name"),
            company=_cell(row, col_map, "company"),
            title=_cell(row, col_map, "title"),
            linkedin_url=_cell(row, col_map, "linkedin_url"),
            custom_fields=custom_fields or None,
        )

        if lead_id:
            log.info("lead_imported", email=email, lead_id=lead_id)
            imported += 1
            lead_ids.append(lead_id)
        else:
            log.info("lead_skipped_duplicate", email=email)
            skipped += 1

    return {"imported": imported, "skipped": skipped, "lead_ids": lead_ids}


def create_example_excel(output_path: Path) -> None:
    """Create an example Excel file showing expected format."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Leads"

    ws.append(["email", "first_name", "last_name", "company", "title", "linkedin_url", "score"])

    ws.append([
        "sarah@glossybrand.com",
        "Sarah",
        "Chen",
        "Glossy Brand",
        "Marketing Director",
        "https://linkedin.com/in/sarahchen",
        42,
    ])
    ws.append([
        "mike@acmeco.com",
        "Mike",
        "Johnson",
        "Acme Co",
        "Head of Growth",
        "https://linkedin.com/in/mikej",
        7,
    ])

    wb.save(output_path)
