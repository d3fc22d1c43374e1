"""Spreadsheet (xlsx) export of filtered record lists."""
import io
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import openpyxl
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .schemas import CatalogSchema, ScreenSchema

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

Column = Tuple[str, str]    # (field, header label)


def export_filename(base: str, date_from: Optional[str] = None,
                    date_to: Optional[str] = None) -> str:
    """``<base>_<from>_<to>.xlsx`` when both bounds are set, else ``<base>.xlsx``."""
    if date_from and date_to:
        return f"{base}_{date_from}_{date_to}.xlsx"
    return f"{base}.xlsx"


def screen_columns(schema: Union[ScreenSchema, CatalogSchema]) -> List[Column]:
    if isinstance(schema, CatalogSchema):
        cols = [(f, f.capitalize()) for f in schema.fields] + [('activo', 'Activo')]
    else:
        cols = [(f.name, f.label) for f in schema.fields]
    cols.append(('created_at', 'Fecha de Registro'))
    return cols


def records_to_xlsx(records: Sequence[Dict[str, Any]], columns: Sequence[Column],
                    sheet_title: str) -> bytes:
    """One header row plus one row per record, in the given order."""
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = sheet_title[:31]
    thin = Side(border_style="thin", color="CBD5E1")
    border = Border(left=thin, right=thin, top=thin, bottom=thin)

    for c, (_, label) in enumerate(columns, start=1):
        cell = ws.cell(1, c, label)
        cell.font = Font(bold=True, color="FFFFFF", size=9)
        cell.fill = PatternFill(fill_type="solid", fgColor="B91C1C")
        cell.alignment = Alignment(horizontal="left")
        cell.border = border
        ws.column_dimensions[get_column_letter(c)].width = max(12, len(label) + 4)

    for r_idx, record in enumerate(records, start=2):
        fill_color = "F8FAFC" if r_idx % 2 == 0 else "FFFFFF"
        for c, (name, _) in enumerate(columns, start=1):
            value = record.get(name)
            if isinstance(value, bool):
                value = 'Sí' if value else 'No'
            cell = ws.cell(r_idx, c, '' if value is None else value)
            cell.font = Font(size=9)
            cell.fill = PatternFill(fill_type="solid", fgColor=fill_color)
            cell.border = border

    ws.freeze_panes = "A2"
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def export_records(schema: Union[ScreenSchema, CatalogSchema], records: Sequence[Dict[str, Any]],
                   date_from: Optional[str] = None,
                   date_to: Optional[str] = None) -> Tuple[str, bytes]:
    """Return ``(filename, xlsx bytes)`` for a screen's filtered records."""
    content = records_to_xlsx(records, screen_columns(schema), schema.label)
    return export_filename(schema.resource, date_from, date_to), content
