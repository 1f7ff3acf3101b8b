# knowledge_base/parsers/tabular.py
import csv
import io
import json
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import openpyxl
import xlrd

from knowledge_base.chunking import ParsedChunk, ParsedDocument
from knowledge_base.models import ChunkType, FileType
from knowledge_base.parsers.base import Content, Parser, as_bytes, as_text

ROWS_PER_CHUNK = 20


def _csv_records(csv_text: str) -> Iterator[Tuple[List[str], int, int]]:
    """Yield (values, first_line, last_line) per CSV record; blank records are skipped."""
    reader = csv.reader(io.StringIO(csv_text))
    last_line = 0
    for values in reader:
        first_line, last_line = last_line + 1, reader.line_num
        if any(v.strip() for v in values):
            yield values, first_line, last_line


def _as_row(columns: Sequence[str], values: Sequence[str]) -> Dict[str, Any]:
    row: Dict[str, Any] = {col: (values[i] if i < len(values) else None) for i, col in enumerate(columns)}
    if len(values) > len(columns):
        row["_extra"] = list(values[len(columns):])
    return row


def table_chunks(
    csv_text: str,
    header_label: str,
    extra_metadata: Optional[Dict[str, Any]] = None,
) -> Tuple[List[ParsedChunk], List[str], int]:
    """
    Turn CSV text into one metadata chunk (the header) plus one table chunk per
    ROWS_PER_CHUNK data rows, each row serialised as a JSON line.
    Line ranges are the CSV text's own (1-based) lines, blank lines included.
    Returns (chunks, columns, row_count).
    """
    records = _csv_records(csv_text)
    header = next(records, None)
    columns = list(header[0]) if header else []
    rows = [(_as_row(columns, values), first, last) for values, first, last in records]
    extra = extra_metadata or {}

    chunks: List[ParsedChunk] = []
    if columns or extra:
        chunks.append(ParsedChunk(
            content=f"{header_label}Columns: {', '.join(columns) if columns else 'none'}",
            chunk_type=ChunkType.METADATA,
            metadata=dict(extra),
        ))

    for i in range(0, len(rows), ROWS_PER_CHUNK):
        batch = rows[i:i + ROWS_PER_CHUNK]
        chunks.append(ParsedChunk(
            content="\n".join(json.dumps(row, ensure_ascii=False, default=str) for row, _, _ in batch),
            chunk_type=ChunkType.TABLE,
            source_line_start=batch[0][1],
            source_line_end=batch[-1][2],
            metadata=dict(extra),
        ))

    return chunks, columns, len(rows)


class CsvParser(Parser):
    file_types = (FileType.CSV,)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        text = as_text(content)
        chunks, columns, row_count = table_chunks(text, header_label="")
        return ParsedDocument(
            content=text,
            metadata={"columns": columns, "row_count": row_count},
            chunks=chunks,
        )


def _rows_to_csv(rows: Iterable[Sequence[Any]]) -> str:
    """One CSV line per sheet row; empty rows stay as blank lines so line numbers match sheet rows."""
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    for row in rows:
        if all(v is None or str(v).strip() == "" for v in row):
            out.write("\n")
            continue
        writer.writerow(["" if v is None else v for v in row])
    return out.getvalue()


def _sheets_document(sheets: Iterable[Tuple[str, str]]) -> ParsedDocument:
    """Build the document from (sheet_name, csv_text) pairs."""
    sheet_names: List[str] = []
    chunks: List[ParsedChunk] = []
    all_text: List[str] = []
    for sheet_name, csv_text in sheets:
        sheet_names.append(sheet_name)
        all_text.append(f"Sheet: {sheet_name}\n{csv_text}")
        sheet_chunks, _, _ = table_chunks(
            csv_text,
            header_label=f'Sheet "{sheet_name}" - ',
            extra_metadata={"sheet_name": sheet_name},
        )
        chunks.extend(sheet_chunks)

    return ParsedDocument(
        content="\n\n".join(all_text),
        metadata={
            "sheet_count": len(sheet_names),
            "sheet_names": sheet_names,
        },
        chunks=chunks,
    )


class XlsxParser(Parser):
    file_types = (FileType.XLSX,)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        workbook = openpyxl.load_workbook(io.BytesIO(as_bytes(content)), read_only=True, data_only=True)
        try:
            return _sheets_document(
                (name, _rows_to_csv(workbook[name].iter_rows(values_only=True)))
                for name in workbook.sheetnames
            )
        finally:
            workbook.close()


def _xls_value(cell, datemode: int) -> Any:
    if cell.ctype == xlrd.XL_CELL_DATE:
        return xlrd.xldate_as_datetime(cell.value, datemode).isoformat()
    if cell.ctype == xlrd.XL_CELL_NUMBER and float(cell.value).is_integer():
        return int(cell.value)
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return None
    return cell.value


class XlsParser(Parser):
    """Excel 97-2003 workbooks, read with xlrd; same chunk layout as XLSX."""

    file_types = (FileType.XLS,)

    def parse(self, content: Content, file_name: str, file_type: FileType) -> ParsedDocument:
        book = xlrd.open_workbook(file_contents=as_bytes(content), on_demand=True)
        try:
            def sheets():
                for name in book.sheet_names():
                    sheet = book.sheet_by_name(name)
                    rows = ([_xls_value(c, book.datemode) for c in sheet.row(r)] for r in range(sheet.nrows))
                    yield name, _rows_to_csv(rows)

            return _sheets_document(sheets())
        finally:
            book.release_resources()
