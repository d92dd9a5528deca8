"""Delimited-text parsing for results uploads."""

import csv
from dataclasses import dataclass, field
from io import StringIO
from typing import Dict, List

from upload_errors import ParseError, RowStructuralError

BYTE_ORDER_MARK = '\ufeff'


@dataclass
class ParsedRow:
    row_number: int
    values: Dict[str, str]


@dataclass
class ParsedTable:
    headers: List[str]
    rows: List[ParsedRow] = field(default_factory=list)
    structural_errors: List[RowStructuralError] = field(default_factory=list)

    @property
    def total_rows(self):
        return len(self.rows) + len(self.structural_errors)


def decode_upload(content):
    """Decode uploaded bytes as UTF-8 text without a byte-order marker."""
    if isinstance(content, bytes):
        try:
            content = content.decode('utf-8-sig')
        except UnicodeDecodeError:
            raise ParseError('File is not valid UTF-8 text. Save the sheet as "CSV UTF-8" and upload again.')
    return (content or '').lstrip(BYTE_ORDER_MARK)


def _is_blank(fields):
    return not any((value or '').strip() for value in fields)


def parse_delimited(content, delimiter=','):
    """Parse an uploaded sheet into ordered header -> value row mappings.

    Blank lines are skipped and the first remaining line is the header.
    Rows whose field count differs from the header are dropped and reported
    as structural errors. ``row_number`` is the line number in the file.
    """
    text = decode_upload(content)
    reader = csv.reader(StringIO(text), delimiter=delimiter)

    headers = None
    table = None
    try:
        for fields in reader:
            if _is_blank(fields):
                continue
            fields = [(value or '').strip() for value in fields]
            if headers is None:
                headers = fields
                duplicates = sorted({header for header in headers if header and headers.count(header) > 1})
                if duplicates:
                    labels = ', '.join(f'"{header}"' for header in duplicates)
                    raise ParseError(f'Header row repeats column(s) {labels}. Each column name must be unique.')
                table = ParsedTable(headers=headers)
                continue
            if len(fields) != len(headers):
                table.structural_errors.append(RowStructuralError(
                    reader.line_num,
                    f'Row {reader.line_num}: expected {len(headers)} columns, found {len(fields)}.',
                    expected=len(headers),
                    found=len(fields),
                    values=fields,
                ))
                continue
            values = {header: value for header, value in zip(headers, fields) if header}
            table.rows.append(ParsedRow(row_number=reader.line_num, values=values))
    except csv.Error as exc:
        raise ParseError(f'Line {reader.line_num}: {exc}')

    if table is None:
        raise ParseError('CSV is empty or has no header row.')
    if table.total_rows == 0:
        raise ParseError('CSV has a header row but no data rows.')
    return table
