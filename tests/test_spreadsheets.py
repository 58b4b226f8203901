"""
Tests for reading union roster spreadsheets.
"""

import pytest
from openpyxl import Workbook

from johapon.spreadsheets import map_headers, read_invite_rows, read_member_rows, read_rows


@pytest.fixture
def roster(tmp_path):
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "조합원"
    sheet.append(["번호", "성명", "연락처", "소유지 지번", "동", "호수", "토지 지분율", "비고"])
    sheet.append([1, "김철수", "010-1111-2222", "미아동 791-1234", "101동", "1001호", 50.0, None])
    sheet.append([2, "이영희", "010-3333-4444", "미아동 802-5", None, "비102호", 100, "해외 거주"])
    sheet.append([None, None, None, None, None, None, None, None])
    sheet.append([4, "박민수", "010-5555-6666", None, None, None, None, None])
    path = tmp_path / "roster.xlsx"
    workbook.save(path)
    return path


class TestHeaders:

    def test_aliases_and_spacing(self):
        columns = map_headers(["번호", "성명", " 소유지 지번 ", "Phone", "알수없음"])

        assert columns == {1: "name", 2: "property_address", 3: "phone_number"}


class TestReadRows:
    """Parsing rows into member and invite models."""

    def test_raw_rows_skip_blank_lines(self, roster):
        rows = read_rows(roster)

        assert [r["name"] for r in rows] == ["김철수", "이영희", "박민수"]
        assert rows[0]["land_ownership_ratio"] == "50"

    def test_member_rows(self, roster):
        rows, errors = read_member_rows(roster)

        assert [r.name for r in rows] == ["김철수", "이영희"]
        assert (rows[0].dong, rows[0].ho, rows[0].land_ownership_ratio) == ("101", "1001", 50.0)
        assert rows[1].ho == "B102"
        assert rows[1].notes == "해외 거주"
        assert len(errors) == 1
        assert errors[0].startswith("Row 5: property_address")

    def test_invite_rows(self, roster):
        rows, errors = read_invite_rows(roster, sheet="조합원")

        assert [(r.name, r.phone_number) for r in rows] == [
            ("김철수", "010-1111-2222"),
            ("이영희", "010-3333-4444"),
        ]
        assert len(errors) == 1
