"""Tests for Gripp row mappers."""

import json
from datetime import date

import pytest

from gripp_mirror.sync.errors import ValidationError
from gripp_mirror.sync.mappers import (
    date_part,
    map_absence_line,
    map_absence_request,
    map_employee,
    map_hour,
    map_invoice,
    map_invoice_line,
    map_project,
    ref_id,
    to_float,
)

TODAY = date(2024, 3, 15)


def gripp_date(value):
    return {"date": f"{value} 00:00:00.000000", "timezone_type": 3, "timezone": "Europe/Amsterdam"}


class TestHelpers:
    def test_ref_id(self):
        assert ref_id({"id": 4, "searchname": "x"}) == 4
        assert ref_id(4) == 4
        assert ref_id("12") == 12
        assert ref_id(None) is None
        assert ref_id({"id": 0}) is None

    def test_date_part(self):
        assert date_part(gripp_date("2024-01-02")) == "2024-01-02"
        assert date_part("2024-01-02T10:00:00Z") == "2024-01-02"
        assert date_part(None) is None

    def test_to_float(self):
        assert to_float("12.50") == 12.5
        assert to_float(None) == 0.0
        assert to_float("n/a", default=1.0) == 1.0


class TestMapProject:
    def test_maps_fields(self):
        row = map_project(
            {
                "id": 10,
                "name": "Website",
                "number": 1042,
                "archived": False,
                "company": {"id": 3, "searchname": "Acme"},
                "phase": {"id": 2, "searchname": "Running"},
                "deadline": gripp_date("2024-06-30"),
                "totalexclvat": "1000.00",
                "tags": [{"id": 1, "searchname": "Vaste prijs"}],
                "projectlines": [{"id": 5, "amount": 10}],
                "updatedon": gripp_date("2024-03-01"),
            }
        )

        assert row["remote_id"] == 10
        assert row["number"] == "1042"
        assert row["archived"] == 0
        assert row["company_name"] == "Acme"
        assert row["phase_id"] == 2
        assert row["deadline"] == "2024-06-30"
        assert row["total_excl_vat"] == 1000.0
        assert json.loads(row["tags"])[0]["searchname"] == "Vaste prijs"
        assert json.loads(row["project_lines"]) == [{"amount": 10, "id": 5}]

    def test_missing_id_raises(self):
        with pytest.raises(ValidationError):
            map_project({"name": "No id"})

    def test_missing_name_raises(self):
        with pytest.raises(ValidationError):
            map_project({"id": 1})


class TestMapEmployee:
    def test_maps_fields(self):
        row = map_employee(
            {
                "id": 5,
                "firstname": "Ann",
                "lastname": "Smit",
                "email": "ann@example.com",
                "function": {"id": 1, "searchname": "Developer"},
                "active": False,
            }
        )

        assert row["function"] == "Developer"
        assert row["active"] == 0

    def test_plain_function(self):
        assert map_employee({"id": 5, "function": "PM"})["function"] == "PM"


class TestMapHour:
    def test_maps_fields(self):
        row = map_hour(
            {
                "id": 100,
                "employee": {"id": 5, "searchname": "Ann"},
                "offerprojectbase": {"id": 10, "searchname": "Website"},
                "offerprojectline": {"id": 77},
                "date": gripp_date("2024-03-01"),
                "amount": "2.5",
                "status": {"id": 2, "searchname": "Definitief"},
            }
        )

        assert row["employee_remote_id"] == 5
        assert row["project_remote_id"] == 10
        assert row["projectline_remote_id"] == 77
        assert row["date"] == "2024-03-01"
        assert row["amount"] == 2.5
        assert row["status_name"] == "Definitief"

    def test_missing_date_raises(self):
        with pytest.raises(ValidationError):
            map_hour({"id": 100, "amount": 1})


class TestMapInvoice:
    def test_paid_invoice(self):
        row = map_invoice(
            {
                "id": 1,
                "number": 2024001,
                "date": gripp_date("2024-01-01"),
                "expirydate": gripp_date("2024-01-31"),
                "totalinclvat": "121.00",
                "totalpayed": "121.00",
                "totalopeninclvat": "0.00",
                "totalincldiscountexclvat": "100.00",
            },
            TODAY,
        )

        assert row["is_paid"] == 1
        assert row["is_overdue"] == 0
        assert row["status"] == "paid"
        assert row["total_excl_vat"] == 100.0
        assert row["number"] == "2024001"

    def test_rounding_noise_counts_as_paid(self):
        row = map_invoice(
            {"id": 1, "totalinclvat": "100.00", "totalopeninclvat": "0.004"}, TODAY
        )

        assert row["status"] == "paid"

    def test_overdue_invoice(self):
        row = map_invoice(
            {
                "id": 2,
                "date": gripp_date("2024-01-01"),
                "expirydate": gripp_date("2024-02-01"),
                "totalinclvat": "121.00",
                "totalpayed": "21.00",
            },
            TODAY,
        )

        assert row["total_open"] == 100.0
        assert row["is_overdue"] == 1
        assert row["status"] == "overdue"

    def test_unpaid_not_yet_due(self):
        row = map_invoice(
            {
                "id": 3,
                "date": gripp_date("2024-03-10"),
                "expirydate": gripp_date("2024-04-10"),
                "totalinclvat": "50",
                "totalopeninclvat": "50",
            },
            TODAY,
        )

        assert row["status"] == "unpaid"

    def test_due_date_from_payment_term(self):
        row = map_invoice(
            {"id": 4, "date": gripp_date("2024-03-01"), "paymentterm": {"days": 14}, "totalinclvat": "10"},
            TODAY,
        )

        assert row["due_date"] == "2024-03-15"
        assert row["status"] == "unpaid"

    def test_due_date_defaults_to_thirty_days(self):
        row = map_invoice({"id": 5, "date": gripp_date("2024-01-01"), "totalinclvat": "10"}, TODAY)

        assert row["due_date"] == "2024-01-31"
        assert row["status"] == "overdue"

    def test_fallback_number(self):
        assert map_invoice({"id": 6}, TODAY)["number"] == "GRIPP-6"

    def test_excl_vat_fallback(self):
        assert map_invoice({"id": 7, "totalexclvat": "80"}, TODAY)["total_excl_vat"] == 80.0

    def test_invalid_date_raises(self):
        with pytest.raises(ValidationError):
            map_invoice({"id": 8, "date": {"date": "not a date"}}, TODAY)


class TestMapInvoiceLine:
    def test_maps_fields(self):
        row = map_invoice_line(
            {
                "id": 9,
                "description": "Design",
                "amount": "3",
                "sellingprice": "95.00",
                "vat": {"id": 1, "searchname": "21% btw"},
            }
        )

        assert row == {
            "remote_id": 9,
            "description": "Design",
            "amount": 3.0,
            "price": 95.0,
            "tax_percentage": 21.0,
        }

    def test_not_an_object(self):
        with pytest.raises(ValidationError):
            map_invoice_line("garbage")


class TestMapAbsence:
    def test_request(self):
        row = map_absence_request(
            {
                "id": 20,
                "employee": {"id": 5},
                "absencetype": {"id": 1, "searchname": "Verlof"},
                "description": "Holiday",
                "status": {"id": 2, "searchname": "Approved"},
            }
        )

        assert row["employee_remote_id"] == 5
        assert row["absencetype_name"] == "Verlof"
        assert row["status_id"] == 2

    def test_line(self):
        row = map_absence_line(
            {
                "id": 31,
                "date": {"date": "2024-03-04 00:00:00.000000"},
                "amount": "8",
                "absencerequeststatus": {"id": 2, "searchname": "Approved"},
            }
        )

        assert row["date"] == "2024-03-04"
        assert row["amount"] == 8.0
        assert row["status_name"] == "Approved"

    def test_line_without_date_raises(self):
        with pytest.raises(ValidationError):
            map_absence_line({"id": 31, "amount": 8})
