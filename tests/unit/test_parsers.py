import pandas as pd
import pytest

from recordhub.parsers import FileType, ParseError, detect_file_type, parse_file


class TestDetectFileType:

    @pytest.mark.parametrize("name, expected", [
        ("policies.csv", FileType.CSV),
        ("POLICIES.CSV", FileType.CSV),
        ("book.xlsx", FileType.EXCEL),
        ("notes.pdf", FileType.UNKNOWN),
        ("legacy.xls", FileType.UNKNOWN),
    ])
    def test_by_extension(self, name, expected):
        assert detect_file_type(name) is expected


class TestParseFile:

    def test_csv_keeps_text_and_strips_headers(self, tmp_path):
        path = tmp_path / "upload.csv"
        path.write_text(" policy_number ,premium_amount,zip_code\nP-1,$1200,00501\nP-2,,\n")

        records = parse_file(path)

        assert records == [
            {"policy_number": "P-1", "premium_amount": "$1200", "zip_code": "00501"},
            {"policy_number": "P-2", "premium_amount": "", "zip_code": ""},
        ]

    def test_xlsx(self, tmp_path):
        path = tmp_path / "upload.xlsx"
        pd.DataFrame(
            {"policy_number": ["P-1", "P-2"], "agent": ["Alex", "Sam"]}
        ).to_excel(path, index=False, engine="openpyxl")

        records = parse_file(path)

        assert [r["policy_number"] for r in records] == ["P-1", "P-2"]
        assert records[1]["agent"] == "Sam"

    def test_header_only_csv_has_no_records(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("policy_number,agent\n")

        assert parse_file(path) == []

    def test_header_only_xlsx_has_no_records(self, tmp_path):
        path = tmp_path / "empty.xlsx"
        pd.DataFrame(columns=["policy_number", "agent"]).to_excel(path, index=False, engine="openpyxl")

        assert parse_file(path) == []

    def test_xlsx_without_header(self, tmp_path):
        path = tmp_path / "blank.xlsx"
        pd.DataFrame().to_excel(path, index=False, engine="openpyxl")

        with pytest.raises(ParseError, match="no header row"):
            parse_file(path)

    def test_blank_csv(self, tmp_path):
        path = tmp_path / "blank.csv"
        path.write_text("")

        with pytest.raises(ParseError):
            parse_file(path)

    def test_unsupported_type(self, tmp_path):
        path = tmp_path / "upload.pdf"
        path.write_bytes(b"%PDF-1.4")

        with pytest.raises(ParseError, match="Unsupported file type"):
            parse_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError, match="File not found"):
            parse_file(tmp_path / "gone.csv")

    def test_corrupt_xlsx(self, tmp_path):
        path = tmp_path / "broken.xlsx"
        path.write_bytes(b"not a zip archive")

        with pytest.raises(ParseError, match="Failed to parse Excel"):
            parse_file(path)
