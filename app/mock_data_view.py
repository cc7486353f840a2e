"""Routes for browsing mock data stored by the in-memory repositories."""
from __future__ import annotations

import html
import json
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from fastapi import APIRouter, HTTPException
from fastapi.responses import HTMLResponse

from app.schemas.customer import Customer
from app.services.exceptions import ConflictError
from app.services.mock_store import MockInvoicingProvider, get_mock_store

router = APIRouter()


def _stringify(value: Any) -> str:
    """Return a JSON-friendly string representation for table cells."""
    if value is None:
        return ""
    if isinstance(value, (str, int, float, bool)):
        return str(value)
    return json.dumps(value, default=str)


def _build_table(title: str, rows: Iterable[Mapping[str, Any]]) -> str:
    row_list: List[Dict[str, Any]] = [dict(row) for row in rows]
    section_parts = [f"<section><h2>{html.escape(title)}</h2>"]
    if not row_list:
        section_parts.append("<p>No records found.</p></section>")
        return "".join(section_parts)

    columns: List[str] = []
    for row in row_list:
        for key in row.keys():
            if key not in columns:
                columns.append(key)

    header = "".join(f"<th>{html.escape(column)}</th>" for column in columns)
    body_rows: List[str] = []
    for row in row_list:
        cells = []
        for column in columns:
            value = _stringify(row.get(column))
            cells.append(f"<td>{html.escape(value)}</td>")
        body_rows.append("<tr>" + "".join(cells) + "</tr>")
    table_html = (
        "<table><thead><tr>"
        + header
        + "</tr></thead><tbody>"
        + "".join(body_rows)
        + "</tbody></table>"
    )
    section_parts.append(table_html)
    section_parts.append("</section>")
    return "".join(section_parts)


def _customer_rows(customers: Iterable[Customer]) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for customer in customers:
        rows.append(
            {
                "id": customer.id,
                "name": customer.name,
                "email": customer.email,
                "markup_percentage": str(customer.markup_percentage),
                "twilio_phone_numbers": customer.twilio_phone_numbers,
                "retell_agent_ids": customer.retell_agent_ids,
                "stripe_customer_id": customer.stripe_customer_id,
            }
        )
    return rows


def _provider_invoice_rows(provider: MockInvoicingProvider) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for invoice_id, invoice in provider.invoices.items():
        items = invoice["line_items"]
        rows.append(
            {
                "id": invoice_id,
                "number": invoice["number"],
                "customer": invoice["customer"],
                "status": invoice["status"],
                "line_items": len(items),
                "amount_cents": sum(item.amount_cents for item in items),
                "due_date": invoice["due_date"],
            }
        )
    return rows


def _call_rows(calls: Iterable[Tuple[str, str]]) -> List[Dict[str, Any]]:
    return [
        {"sequence": index, "operation": operation, "target": target}
        for index, (operation, target) in enumerate(calls, start=1)
    ]


@router.get("/mock-data", response_class=HTMLResponse)
async def view_mock_data() -> HTMLResponse:
    """Render all mock data from the shared in-memory store as HTML tables."""
    store = get_mock_store()

    customers = await store.customers.list()
    records = await store.invoices.list()
    users = await store.users.list()
    logins = await store.logins.list()
    sections = [
        _build_table("Customers", _customer_rows(customers)),
        _build_table(
            "Invoice Records",
            (record.model_dump(mode="json") for record in records),
        ),
        _build_table(
            "Provider Customers",
            ({"id": key, **value} for key, value in store.invoicing.customers.items()),
        ),
        _build_table("Provider Invoices", _provider_invoice_rows(store.invoicing)),
        _build_table("Provider Calls", _call_rows(store.invoicing.calls)),
        _build_table("Users", (user.model_dump(mode="json") for user in users)),
        _build_table("Login History", (attempt.model_dump(mode="json") for attempt in logins)),
    ]

    sections_html = "".join(sections)
    html_content = f"""
    <html>
        <head>
            <title>Mock Data Overview</title>
            <style>
                body {{ font-family: Arial, sans-serif; margin: 2rem; }}
                h1 {{ text-align: center; }}
                section {{ margin-bottom: 2rem; }}
                table {{ border-collapse: collapse; width: 100%; }}
                th, td {{ border: 1px solid #ccc; padding: 0.5rem; text-align: left; }}
                th {{ background-color: #f0f0f0; }}
                tbody tr:nth-child(even) {{ background-color: #fafafa; }}
            </style>
        </head>
        <body>
            <h1>Mock Data Overview</h1>
            {sections_html}
        </body>
    </html>
    """

    return HTMLResponse(content=html_content)


@router.delete("/mock-data/{collection}/{record_id}")
async def delete_mock_record(collection: str, record_id: str) -> Dict[str, str]:
    """Remove a record from one of the mock data repositories."""

    store = get_mock_store()
    normalized = collection.strip().lower()

    collection_map = {
        "customer": ("customers", store.customers.delete),
        "customers": ("customers", store.customers.delete),
        "invoice": ("invoices", store.invoices.delete),
        "invoices": ("invoices", store.invoices.delete),
        "user": ("users", store.users.delete),
        "users": ("users", store.users.delete),
    }

    mapping = collection_map.get(normalized)
    if not mapping:
        raise HTTPException(status_code=404, detail="Unsupported mock data collection")

    canonical_name, delete_fn = mapping
    try:
        deleted = await delete_fn(record_id)
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Record not found")

    return {"status": "deleted", "collection": canonical_name, "record_id": record_id}
