"""Convert Gripp payload rows into mirror table rows.

Gripp nests most values: dates arrive as ``{"date": "2024-01-02 00:00:00.000000",
"timezone_type": 3, "timezone": "Europe/Amsterdam"}`` and references as
``{"id": 12, "searchname": "..."}``. Mappers flatten those into plain columns
and raise ``ValidationError`` for rows that cannot be stored.
"""

import json
import re
from datetime import date, timedelta
from typing import Any, Optional

from .errors import ValidationError

__all__ = [
    "map_project",
    "map_employee",
    "map_hour",
    "map_invoice",
    "map_invoice_line",
    "map_absence_request",
    "map_absence_line",
    "PAID_TOLERANCE",
    "DEFAULT_PAYMENT_TERM_DAYS",
]

# Open amounts below this count as settled (rounding noise).
PAID_TOLERANCE = 0.01
DEFAULT_PAYMENT_TERM_DAYS = 30


def _remote_id(row: Any, entity: str) -> int:
    if not isinstance(row, dict):
        raise ValidationError(f"{entity} row is not an object", {"entity": entity})
    value = row.get("id")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"{entity} row has no valid id", {"entity": entity, "id": value}
        ) from None


def ref_id(value: Any) -> Optional[int]:
    """Id of a ``{"id", "searchname"}`` reference, or of a bare id."""
    if isinstance(value, dict):
        value = value.get("id")
    if value in (None, "", 0, "0"):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def ref_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("searchname") or value.get("name")
    return None


def timestamp(value: Any) -> Optional[str]:
    """Full timestamp string of a Gripp date object."""
    if isinstance(value, dict):
        value = value.get("date")
    return str(value) if value else None


def date_part(value: Any) -> Optional[str]:
    """``YYYY-MM-DD`` part of a Gripp date object or string."""
    stamp = timestamp(value)
    if not stamp:
        return None
    return stamp.split(" ")[0].split("T")[0]


def to_float(value: Any, default: float = 0.0) -> float:
    """Parse Gripp's stringly typed amounts."""
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _json(value: Any) -> str:
    return json.dumps(value or [], sort_keys=True)


def map_project(row: dict) -> dict:
    remote_id = _remote_id(row, "project")
    name = row.get("name") or row.get("searchname")
    if not name:
        raise ValidationError("project row has no name", {"entity": "project", "id": remote_id})

    number = row.get("number")
    return {
        "remote_id": remote_id,
        "number": str(number) if number not in (None, "") else None,
        "name": name,
        "description": row.get("description") or "",
        "company_remote_id": ref_id(row.get("company")),
        "company_name": ref_name(row.get("company")),
        "phase_id": ref_id(row.get("phase")),
        "phase_name": ref_name(row.get("phase")),
        "accountmanager_remote_id": ref_id(row.get("accountmanager")),
        "archived": 1 if row.get("archived") else 0,
        "start_date": date_part(row.get("startdate")),
        "deadline": date_part(row.get("deadline")),
        "end_date": date_part(row.get("enddate")),
        "total_excl_vat": to_float(row.get("totalexclvat")),
        "total_incl_vat": to_float(row.get("totalinclvat")),
        "tags": _json(row.get("tags")),
        "project_lines": _json(row.get("projectlines")),
        "remote_created_at": timestamp(row.get("createdon")),
        "remote_updated_at": timestamp(row.get("updatedon")),
    }


def map_employee(row: dict) -> dict:
    remote_id = _remote_id(row, "employee")
    function = row.get("function")
    return {
        "remote_id": remote_id,
        "firstname": row.get("firstname") or "",
        "lastname": row.get("lastname") or "",
        "email": row.get("email"),
        "function": ref_name(function) if isinstance(function, dict) else (function or ""),
        "department": ref_name(row.get("department")),
        "active": 0 if row.get("active") is False else 1,
        "remote_created_at": timestamp(row.get("createdon")),
        "remote_updated_at": timestamp(row.get("updatedon")),
    }


def map_hour(row: dict) -> dict:
    remote_id = _remote_id(row, "hour")
    hour_date = date_part(row.get("date"))
    if not hour_date:
        raise ValidationError("hour row has no date", {"entity": "hour", "id": remote_id})

    project = row.get("offerprojectbase") or row.get("project")
    projectline = row.get("offerprojectline") or row.get("projectline")
    status = row.get("status")
    return {
        "remote_id": remote_id,
        "employee_remote_id": ref_id(row.get("employee")),
        "project_remote_id": ref_id(project),
        "projectline_remote_id": ref_id(projectline),
        "date": hour_date,
        "amount": to_float(row.get("amount")),
        "description": row.get("description") or "",
        "status_id": ref_id(status),
        "status_name": ref_name(status),
        "remote_created_at": timestamp(row.get("createdon")),
        "remote_updated_at": timestamp(row.get("updatedon")),
    }


def map_invoice(row: dict, today: date) -> dict:
    """Map an invoice and derive its payment state as of ``today``.

    The open amount comes from ``totalopeninclvat`` when present, otherwise
    it is total minus paid. The due date is the expiry date, or the invoice
    date plus the payment term (30 days when unknown).
    """
    remote_id = _remote_id(row, "invoice")

    total = to_float(row.get("totalinclvat"))
    paid = to_float(row.get("totalpayed"))
    if row.get("totalopeninclvat") is not None:
        open_amount = to_float(row.get("totalopeninclvat"))
    else:
        open_amount = total - paid
    is_paid = abs(open_amount) < PAID_TOLERANCE

    invoice_date = date_part(row.get("date")) or today.isoformat()
    due_date = date_part(row.get("expirydate"))
    if not due_date:
        term = row.get("paymentterm")
        days = term.get("days") if isinstance(term, dict) else None
        try:
            days = int(days) if days else DEFAULT_PAYMENT_TERM_DAYS
        except (TypeError, ValueError):
            days = DEFAULT_PAYMENT_TERM_DAYS
        try:
            due_date = (date.fromisoformat(invoice_date) + timedelta(days=days)).isoformat()
        except ValueError:
            raise ValidationError(
                "invoice row has an invalid date",
                {"entity": "invoice", "id": remote_id, "date": invoice_date},
            ) from None

    try:
        is_overdue = not is_paid and date.fromisoformat(due_date) < today
    except ValueError:
        raise ValidationError(
            "invoice row has an invalid due date",
            {"entity": "invoice", "id": remote_id, "due_date": due_date},
        ) from None

    if is_paid:
        status = "paid"
    elif is_overdue:
        status = "overdue"
    else:
        status = "unpaid"

    number = row.get("number")
    excl_vat = row.get("totalincldiscountexclvat") or row.get("totalexclvat")
    return {
        "remote_id": remote_id,
        "number": str(number) if number not in (None, "") else f"GRIPP-{remote_id}",
        "date": invoice_date,
        "due_date": due_date,
        "company_remote_id": ref_id(row.get("company")),
        "company_name": ref_name(row.get("company")) or "",
        "total_incl_vat": total,
        "total_excl_vat": to_float(excl_vat),
        "total_paid": paid,
        "total_open": open_amount,
        "is_paid": 1 if is_paid else 0,
        "is_overdue": 1 if is_overdue else 0,
        "status": status,
        "subject": row.get("subject") or "",
        "remote_created_at": timestamp(row.get("createdon")),
        "remote_updated_at": timestamp(row.get("updatedon")),
    }


def map_invoice_line(row: dict) -> dict:
    if not isinstance(row, dict):
        raise ValidationError("invoice line is not an object", {"entity": "invoice line"})
    vat = ref_name(row.get("vat")) or ""
    digits = re.sub(r"[^0-9.]", "", vat)
    return {
        "remote_id": ref_id(row.get("id")),
        "description": row.get("description") or "",
        "amount": to_float(row.get("amount")),
        "price": to_float(row.get("sellingprice")),
        "tax_percentage": to_float(digits),
    }


def map_absence_request(row: dict) -> dict:
    remote_id = _remote_id(row, "absence request")
    absencetype = row.get("absencetype")
    status = row.get("status")
    return {
        "remote_id": remote_id,
        "employee_remote_id": ref_id(row.get("employee")),
        "absencetype_id": ref_id(absencetype),
        "absencetype_name": ref_name(absencetype),
        "description": row.get("description") or "",
        "comment": row.get("comment") or "",
        "status_id": ref_id(status),
        "status_name": ref_name(status),
        "remote_created_at": timestamp(row.get("createdon")),
        "remote_updated_at": timestamp(row.get("updatedon")),
    }


def map_absence_line(row: dict) -> dict:
    if not isinstance(row, dict):
        raise ValidationError("absence line is not an object", {"entity": "absence line"})
    line_date = date_part(row.get("date"))
    if not line_date:
        raise ValidationError(
            "absence line has no date", {"entity": "absence line", "id": row.get("id")}
        )
    status = row.get("absencerequeststatus")
    return {
        "remote_id": ref_id(row.get("id")),
        "date": line_date,
        "amount": to_float(row.get("amount")),
        "description": row.get("description") or "",
        "start_time": row.get("startingtime") or None,
        "status_id": ref_id(status),
        "status_name": ref_name(status) or "",
    }
