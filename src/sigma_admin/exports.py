"""Export surfaces: CSV text, XLSX workbooks, and printable order invoices."""

from __future__ import annotations

import csv
import io
from datetime import datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from html import escape
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import quote

import openpyxl
from openpyxl.styles import Font

from . import log
from .constants import PaymentMethod
from .data_manager import ConfigSettings, Order


QR_SERVICE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=120x120&data="


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    return value


def rows_to_csv(rows: Sequence[Mapping[str, Any]]) -> str:
    """Render report rows as CSV text.

    The header comes from the keys of the first row. Cells containing a quote,
    a comma, or a newline are quoted. An empty sequence renders as ``""``.
    """

    if not rows:
        return ""
    keys = list(rows[0].keys())
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(keys)
    for row in rows:
        writer.writerow([_cell(row.get(key)) for key in keys])
    return buffer.getvalue().rstrip("\n")


def write_csv(rows: Sequence[Mapping[str, Any]], path: Path) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    # utf-8-sig so spreadsheet tools pick up the encoding of Vietnamese names.
    target.write_text(rows_to_csv(rows), encoding="utf-8-sig")
    log.info("Wrote %d rows to '%s'", len(rows), target)
    return target


def _xlsx_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (list, tuple, dict)):
        return str(value)
    return _cell(value)


def write_xlsx(rows: Sequence[Mapping[str, Any]], path: Path, *, sheet_title: str = "Report") -> Path:
    """Write report rows to a single-sheet workbook with a bold header row."""

    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = sheet_title[:31]
    if rows:
        keys = list(rows[0].keys())
        bold_font = Font(bold=True)
        for col_idx, key in enumerate(keys, 1):
            cell = sheet.cell(row=1, column=col_idx)
            cell.value = key
            cell.font = bold_font
        for row in rows:
            sheet.append([_xlsx_value(row.get(key)) for key in keys])

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(target)
    log.info("Wrote %d rows to workbook '%s'", len(rows), target)
    return target


def format_vnd(amount: Decimal) -> str:
    """Format an amount the way the storefront prints prices: ``1.250.000đ``."""

    whole = int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return f"{whole:,}".replace(",", ".") + "đ"


def product_page_url(settings: ConfigSettings, product_id: int) -> str:
    base = (settings.store_public_url or "").rstrip("/")
    return f"{base}/?product={product_id}"


def _variant_label(order: Order) -> str:
    parts: List[str] = []
    if order.product_size:
        parts.append(f"Size: {order.product_size}")
    if order.product_color:
        parts.append(f"Color: {order.product_color}")
    return " | ".join(parts) or "-"


def _paragraphs(lines: Iterable[str]) -> str:
    return "\n".join(f"        <p>{line}</p>" for line in lines)


def render_invoice_html(order: Order, settings: ConfigSettings, *, tz: Optional[tzinfo] = None) -> str:
    """Build a printable delivery note / invoice for one order.

    Every value taken from the order or the settings is HTML-escaped.
    """

    e = escape
    shipping_fee = order.shipping_fee
    subtotal = order.total_price - shipping_fee
    unit_price = subtotal / order.quantity if order.quantity else subtotal
    placed = datetime.fromtimestamp(order.timestamp / 1000, tz).strftime("%d/%m/%Y")
    qr_url = QR_SERVICE_URL + quote(product_page_url(settings, order.product_id), safe="")

    receiver = [
        f"<strong>{e(order.shipping_name or order.customer_name)}</strong>",
        f"Phone: <strong>{e(order.shipping_phone or order.customer_contact)}</strong>",
        f"Address: {e(order.shipping_address or order.customer_address)}",
    ]
    if order.note:
        receiver.append(f'<em>Note: {e(order.note)}</em>')

    ordered_by = ""
    if order.shipping_name and order.shipping_name != order.customer_name:
        ordered_by = (
            f'    <p class="ordered-by">* Ordered by account: {e(order.customer_name)} '
            f"({e(order.customer_contact)})</p>\n"
        )

    if order.payment_method == PaymentMethod.COD:
        collect = f"<p>Collect on delivery (COD): {format_vnd(order.total_price)}</p>"
    else:
        collect = (
            "<p>Collect on delivery (COD): 0đ (paid by bank transfer)</p>\n"
            '      <p class="paid-note">(Customer has paid by bank transfer)</p>'
        )
    shipping_line = "0đ (Free)" if shipping_fee == 0 else format_vnd(shipping_fee)

    return f"""<!DOCTYPE html>
<html lang="vi">
<head>
  <meta charset="UTF-8">
  <title>Invoice {e(order.id)}</title>
  <style>
    body {{ font-family: 'Times New Roman', serif; padding: 20px; color: #000; }}
    .header {{ text-align: center; margin-bottom: 20px; border-bottom: 2px solid #000; padding-bottom: 10px; }}
    .info-section {{ display: flex; justify-content: space-between; margin-bottom: 20px; }}
    .box {{ border: 1px solid #000; padding: 10px; width: 48%; }}
    .order-details {{ width: 100%; border-collapse: collapse; margin-bottom: 20px; }}
    .order-details th, .order-details td {{ border: 1px solid #000; padding: 8px; text-align: left; }}
    .total-section {{ text-align: right; font-weight: bold; }}
    .ordered-by, .paid-note {{ font-size: 12px; font-weight: normal; }}
    .qr-section {{ text-align: center; margin-top: 20px; border-top: 1px dashed #ccc; padding-top: 10px; }}
    @media print {{ @page {{ margin: 0.5cm; }} body {{ margin: 0; }} .box {{ width: 45%; }} }}
  </style>
</head>
<body>
  <div class="header">
    <h1>{e(settings.store_name.upper())}</h1>
    <p>Delivery Note / Invoice</p>
    <p>Order: <strong>{e(order.id)}</strong> | Date: {placed}</p>
  </div>
  <div class="info-section">
    <div class="box">
      <h3>SENDER</h3>
{_paragraphs([f"<strong>{e(settings.store_name)}</strong>", f"Phone: {e(settings.store_phone)}", f"Address: {e(settings.store_address)}"])}
    </div>
    <div class="box">
      <h3>DELIVER TO</h3>
{_paragraphs(receiver)}
    </div>
  </div>
{ordered_by}  <table class="order-details">
    <thead><tr><th>Product</th><th>Variant</th><th>Qty</th><th>Unit price</th><th>Amount</th></tr></thead>
    <tbody>
      <tr>
        <td>{e(order.product_name)}</td>
        <td>{e(_variant_label(order))}</td>
        <td>{order.quantity}</td>
        <td>{format_vnd(unit_price)}</td>
        <td>{format_vnd(subtotal)}</td>
      </tr>
    </tbody>
  </table>
  <div class="total-section">
      <p>Subtotal: {format_vnd(subtotal)}</p>
      <p>Shipping: {shipping_line}</p>
      {collect}
  </div>
  <div class="qr-section"><p>Scan to buy this product again:</p><img src="{e(qr_url)}" alt="QR Code" width="100" height="100"></div>
  <div class="footer"><p>Thank you for your purchase!</p></div>
</body>
</html>
"""
