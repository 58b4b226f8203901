"""Reading union roster spreadsheets.

Union offices send rosters as .xlsx with Korean headers in no fixed order.
The first row is the header; each known header is mapped to a field below
and unknown columns are ignored. Blank rows are skipped.
"""

import logging
from pathlib import Path

from openpyxl import load_workbook
from pydantic import ValidationError

from .matching import MemberMatchRow
from .schemas import InviteMemberRow

logger = logging.getLogger(__name__)

HEADER_ALIASES = {
    "name": ["이름", "성명", "소유자", "name"],
    "phone_number": ["전화번호", "연락처", "휴대폰", "휴대폰번호", "phone", "phone_number"],
    "property_address": ["소유지지번", "소유지", "물건지", "물건지주소", "property_address"],
    "property_road_address": ["도로명주소", "물건지도로명", "property_road_address"],
    "resident_address": ["거주지", "거주지주소", "resident_address"],
    "resident_address_jibun": ["거주지지번", "resident_address_jibun"],
    "building_name": ["건물이름", "건물명", "building_name"],
    "dong": ["동", "dong"],
    "ho": ["호", "호수", "ho"],
    "land_ownership_ratio": ["토지지분율", "지분율", "land_ownership_ratio"],
    "building_ownership_ratio": ["건축물지분율", "building_ownership_ratio"],
    "notes": ["특이사항", "비고", "notes"],
}

_LOOKUP = {alias.lower(): field for field, aliases in HEADER_ALIASES.items() for alias in aliases}


def normalize_header(header) -> str:
    return "".join(str(header or "").split()).lower()


def map_headers(headers: list) -> dict[int, str]:
    """Column index -> field name for every recognized header."""
    return {
        index: _LOOKUP[normalize_header(h)]
        for index, h in enumerate(headers)
        if normalize_header(h) in _LOOKUP
    }


def _cell(value):
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def numbered_rows(path: Path, sheet: str | None = None) -> list[tuple[int, dict]]:
    """(sheet row number, record) for every non-blank row under the header."""
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        worksheet = workbook[sheet] if sheet else workbook.active
        rows = worksheet.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return []
        columns = map_headers(list(header))
        records = []
        for line, values in enumerate(rows, start=2):
            record = {
                field: _cell(values[index])
                for index, field in columns.items()
                if index < len(values)
            }
            if any(v is not None for v in record.values()):
                records.append((line, record))
        return records
    finally:
        workbook.close()


def read_rows(path: Path, sheet: str | None = None) -> list[dict]:
    """Rows of the sheet as dicts keyed by field name."""
    return [record for _, record in numbered_rows(path, sheet)]


def read_member_rows(path: Path, sheet: str | None = None) -> tuple[list[MemberMatchRow], list[str]]:
    """Parse a roster into match rows. Returns (rows, errors); errors name the sheet row."""
    rows, errors = [], []
    for line, record in numbered_rows(path, sheet):
        try:
            rows.append(MemberMatchRow(**{k: v for k, v in record.items() if v is not None}))
        except ValidationError as e:
            errors.append(f"Row {line}: {e.errors()[0]['loc'][0]} {e.errors()[0]['msg']}")
    if errors:
        logger.warning(f"{len(errors)} invalid rows in {path.name}")
    return rows, errors


def read_invite_rows(path: Path, sheet: str | None = None) -> tuple[list[InviteMemberRow], list[str]]:
    """Parse an invite roster (name, phone, property address)."""
    rows, errors = [], []
    for line, record in numbered_rows(path, sheet):
        try:
            rows.append(InviteMemberRow(
                name=record.get("name"),
                phone_number=record.get("phone_number"),
                property_address=record.get("property_address"),
            ))
        except ValidationError as e:
            errors.append(f"Row {line}: {e.errors()[0]['loc'][0]} {e.errors()[0]['msg']}")
    return rows, errors
