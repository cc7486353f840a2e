#!/usr/bin/env python3
"""Walk one invoice generation run through the local FastAPI service."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict

from fastapi.testclient import TestClient

from app.config import get_settings
from app.main import app


def _check(response) -> Dict[str, Any]:
    if response.status_code >= 400:
        raise RuntimeError(
            f"{response.request.method} {response.request.url.path} failed "
            f"({response.status_code}): {response.text}"
        )
    return response.json()


def run_smoke_test(start: str | None, end: str | None, mode: str) -> Dict[str, Any]:
    """Start a wizard, preview, configure and process it, then return the final state."""

    # Ensure configuration changes are respected between runs.
    get_settings.cache_clear()
    settings = get_settings()
    print(
        f"Running billing smoke test (mock data: {settings.use_mock_data}, "
        f"currency: {settings.currency})"
    )

    body: Dict[str, Any] = {}
    if start and end:
        body["period"] = {"start": start, "end": end}

    with TestClient(app) as client:
        state = _check(client.post("/billing/wizard", json=body))
        wizard_id = state["id"]
        print(f"Wizard {wizard_id} for {state['period']['start']} - {state['period']['end']}")

        state = _check(client.post(f"/billing/wizard/{wizard_id}/preview"))
        for preview in state["previews"]:
            marker = "x" if preview["include_in_batch"] else " "
            print(f"  [{marker}] {preview['customer_name']}: {preview['breakdown']['total']}")

        if not state["selected_customer_ids"]:
            print("No customer has billable usage for this period.")
            return state

        _check(client.post(f"/billing/wizard/{wizard_id}/options", json={"mode": mode}))
        state = _check(client.post(f"/billing/wizard/{wizard_id}/process", params={"wait": True}))

    print("\nResults:")
    print(json.dumps(state["results"], indent=2, ensure_ascii=False))
    print("\nSummary:")
    print(json.dumps(state["summary"], indent=2))
    return state


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description=(
            "Run a smoke test against the local billing service. Defaults to the "
            "previous calendar month and draft invoices."
        )
    )
    parser.add_argument("--start", help="Billing period start (YYYY-MM-DD).")
    parser.add_argument("--end", help="Billing period end (YYYY-MM-DD).")
    parser.add_argument(
        "--mode",
        choices=["draft", "finalize", "send"],
        default="draft",
        help="Invoice mode for the run.",
    )

    args = parser.parse_args(argv)

    try:
        run_smoke_test(args.start, args.end, args.mode)
    except Exception as exc:  # pragma: no cover - manual diagnostic utility
        print(f"Smoke test failed: {exc}", file=sys.stderr)
        return 1

    print("\nSmoke test completed successfully.")
    return 0


if __name__ == "__main__":  # pragma: no cover - manual diagnostic utility
    raise SystemExit(main())
