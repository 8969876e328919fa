"""Tests for sync engine."""

import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from gripp_mirror.config import SyncSettings
from gripp_mirror.store.database import Database
from gripp_mirror.store.sync_status import STATUS_ERROR, STATUS_PENDING, STATUS_SUCCESS
from gripp_mirror.store.unit_of_work import UnitOfWork
from gripp_mirror.sync.errors import (
    RemoteAuthError,
    ServerError,
    TransactionError,
    TransportError,
)
from gripp_mirror.sync.sync_engine import SyncEngine
from gripp_mirror.sync.types import GREATEREQUALS, Filter, RemoteResult

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def gripp_date(value):
    return {"date": f"{value} 00:00:00.000000", "timezone_type": 3, "timezone": "Europe/Amsterdam"}


def projects(count, start=1):
    return [{"id": i, "name": f"Project {i}", "number": 1000 + i} for i in range(start, start + count)]


class FakeGripp:
    """In-memory stand-in for the API, paging rows like the real thing."""

    def __init__(self):
        self.data = {}
        self.errors = {}  # (method, offset) or method -> exception
        self.more_items = None
        self.on_call = None
        self.execute = Mock(side_effect=self._execute)

    def _execute(self, method, filters=(), options=None, retry=True):
        if self.on_call:
            self.on_call(method)

        firstresult = options.paging.firstresult if options and options.paging else 0
        maxresults = options.paging.maxresults if options and options.paging else 250
        for key in ((method, firstresult), method):
            if key in self.errors:
                raise self.errors[key]

        rows = list(self.data.get(method, []))
        if method == "invoiceline.get":
            rows = [r for r in rows if r["invoice"] == filters[0].value]
        return RemoteResult(rows=rows[firstresult : firstresult + maxresults], more_items=self.more_items)

    def calls(self, method):
        return [c for c in self.execute.call_args_list if c.args[0] == method]


class TestSyncEngine:
    """Tests for SyncEngine."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.db = Database(Path(self.temp_dir) / "mirror.db")
        self.db.initialize()
        self.uow = UnitOfWork(self.db)
        self.uow.sync_status.ensure_entities(
            ["projects", "employees", "hours", "invoices", "absences"]
        )

        self.remote = FakeGripp()
        self.now = T0
        self.sleep = Mock()
        self.settings = SyncSettings(page_size=2, page_attempts=3, page_retry_base_delay=2.0)
        self.engine = self._engine(self.settings)

    def teardown_method(self):
        """Clean up."""
        self.db.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _engine(self, settings):
        return SyncEngine(
            client=self.remote,
            uow=self.uow,
            settings=settings,
            clock=lambda: self.now,
            sleep=self.sleep,
        )

    def test_first_sync_is_full_then_incremental(self):
        self.remote.data["project.get"] = projects(3)

        first = self.engine.sync_all(entities=["projects"])

        assert first.success
        assert first.get("projects").mode == "full"
        assert self.uow.projects.count() == 3
        assert all(c.args[1] == () for c in self.remote.calls("project.get"))
        assert self.uow.sync_status.get("projects").last_sync_time == T0

        self.remote.execute.reset_mock()
        self.now = T0 + timedelta(hours=1)
        second = self.engine.sync_all(entities=["projects"])

        assert second.get("projects").mode == "incremental"
        filters = self.remote.calls("project.get")[0].args[1]
        assert filters == (Filter("project.updatedon", GREATEREQUALS, T0.isoformat()),)
        status = self.uow.sync_status.get("projects")
        assert status.last_sync_time == T0 + timedelta(hours=1)
        assert status.last_incremental_sync_time == T0 + timedelta(hours=1)
        assert status.last_full_sync_time == T0

    def test_orders_newest_first(self):
        self.remote.data["invoice.get"] = []

        self.engine.sync_all(entities=["invoices"])

        options = self.remote.calls("invoice.get")[0].args[2]
        assert options.orderings[0].field == "invoice.date"
        assert options.orderings[0].direction == "desc"

    def test_short_page_stops_pagination(self):
        self.remote.data["project.get"] = projects(3)

        result = self.engine.sync_projects()

        offsets = [c.args[2].paging.firstresult for c in self.remote.calls("project.get")]
        assert offsets == [0, 2]
        assert result.rows_synced == 3
        assert result.pages_fetched == 2

    def test_full_page_then_empty_page(self):
        self.remote.data["project.get"] = projects(4)

        result = self.engine.sync_projects()

        assert len(self.remote.calls("project.get")) == 3
        assert result.rows_synced == 4

    def test_more_items_false_stops_pagination(self):
        self.remote.data["project.get"] = projects(6)
        self.remote.more_items = False

        result = self.engine.sync_projects()

        assert len(self.remote.calls("project.get")) == 1
        assert result.rows_synced == 2

    def test_page_cap(self):
        self.remote.data["project.get"] = projects(10)
        engine = self._engine(SyncSettings(page_size=2, max_pages=2))

        result = engine.sync_projects()

        assert len(self.remote.calls("project.get")) == 2
        assert result.rows_synced == 4
        assert result.success

    def test_failing_page_is_skipped(self):
        self.remote.data["project.get"] = projects(5)
        self.remote.errors[("project.get", 2)] = TransportError("connection reset")

        run = self.engine.sync_all(entities=["projects"])

        result = run.get("projects")
        offsets = [c.args[2].paging.firstresult for c in self.remote.calls("project.get")]
        assert offsets == [0, 2, 2, 2, 4]
        assert [c.args[0] for c in self.sleep.call_args_list] == [2.0, 4.0]
        assert result.status == "success"
        assert result.rows_synced == 3
        assert result.pages_skipped == 1
        assert result.partial_failures == 1
        assert run.success

        status = self.uow.sync_status.get("projects")
        assert status.last_sync_status == STATUS_SUCCESS
        assert status.last_partial_failures == 1

    def test_too_many_failures_fail_the_entity(self):
        self.remote.errors["project.get"] = TransportError("connection refused")

        run = self.engine.sync_all()

        # Five pages of three attempts, then the sixteenth failure stops it
        assert len(self.remote.calls("project.get")) == 16
        assert self.sleep.call_count == 10
        assert not run.success
        assert run.error["kind"] == "transport"
        assert run.get("projects").status == "error"
        assert run.get("employees") is None
        assert self.remote.calls("employee.get") == []
        assert self.uow.sync_status.get("projects").last_sync_status == STATUS_ERROR
        assert self.uow.sync_status.get("projects").last_sync_time is None

    def test_failed_page_followed_by_empty_page_fails_the_entity(self):
        self.remote.data["project.get"] = projects(2)
        self.remote.errors[("project.get", 0)] = TransportError("connection reset")

        run = self.engine.sync_all(entities=["projects"])

        offsets = [c.args[2].paging.firstresult for c in self.remote.calls("project.get")]
        assert offsets == [0, 0, 0, 2]
        assert not run.success
        assert run.get("projects").status == "error"
        status = self.uow.sync_status.get("projects")
        assert status.last_sync_status == STATUS_ERROR
        assert status.last_sync_time is None

    def test_failed_commit_marks_completed_entities_failed(self):
        self.remote.data["project.get"] = projects(2)
        self.remote.data["employee.get"] = [{"id": 5, "firstname": "Ann"}]
        commit = self.uow.commit_transaction
        attempts = []

        def commit_fails_once():
            attempts.append(1)
            if len(attempts) == 1:
                raise TransactionError("Failed to commit transaction: database is locked")
            commit()

        with patch.object(self.uow, "commit_transaction", side_effect=commit_fails_once):
            run = self.engine.sync_all(entities=["projects", "employees"])

        assert not run.success
        assert run.error["kind"] == "transaction"
        assert [r.status for r in run.entities] == ["error", "error"]
        assert not self.uow.in_transaction
        assert not self.uow.needs_rollback
        assert self.uow.projects.count() == 0
        for entity in ("projects", "employees"):
            status = self.uow.sync_status.get(entity)
            assert status.last_sync_status == STATUS_ERROR
            assert "database is locked" in status.last_sync_error
            assert status.last_sync_time is None

    def test_auth_error_rolls_back_the_run(self):
        self.remote.data["project.get"] = projects(2)
        self.remote.errors["employee.get"] = RemoteAuthError("Invalid API token")

        run = self.engine.sync_all()

        assert not run.success
        assert run.error["kind"] == "auth"
        assert run.get("projects").status == "rolled_back"
        assert run.get("employees").status == "error"
        assert run.get("hours") is None
        assert len(self.remote.calls("employee.get")) == 1
        self.sleep.assert_not_called()

        assert self.uow.projects.count() == 0
        projects_status = self.uow.sync_status.get("projects")
        assert projects_status.last_sync_status == STATUS_PENDING
        assert projects_status.last_sync_time is None
        employees_status = self.uow.sync_status.get("employees")
        assert employees_status.last_sync_status == STATUS_ERROR
        assert employees_status.last_sync_error == "Invalid API token"

    def test_failed_run_keeps_previous_watermark(self):
        self.remote.data["project.get"] = projects(2)
        self.engine.sync_all(entities=["projects"])

        self.now = T0 + timedelta(hours=1)
        self.remote.errors["project.get"] = RemoteAuthError("expired")
        run = self.engine.sync_all(entities=["projects"])

        assert not run.success
        status = self.uow.sync_status.get("projects")
        assert status.last_sync_time == T0
        assert status.last_sync_status == STATUS_ERROR
        assert self.uow.projects.count() == 2

    def test_resync_is_idempotent(self):
        self.remote.data["project.get"] = projects(3)

        def snapshot():
            return [
                {k: row[k] for k in row.keys() if k != "synced_at"}
                for row in self.uow.projects.all()
            ]

        self.engine.sync_all(incremental=False, entities=["projects"])
        before = snapshot()
        self.now = T0 + timedelta(minutes=5)
        self.engine.sync_all(incremental=False, entities=["projects"])

        assert snapshot() == before
        assert all(
            row["synced_at"] == self.now.isoformat() for row in self.uow.projects.all()
        )

    def test_validation_errors_skip_rows(self):
        self.remote.data["project.get"] = [{"id": 1, "name": "Ok"}, {"id": 2}]

        result = self.engine.sync_projects()

        assert result.status == "success"
        assert result.rows_synced == 1
        assert result.rows_skipped == 1
        assert self.uow.projects.count() == 1

    def test_full_refresh_entities_ignore_watermark(self):
        self.remote.data["project.get"] = projects(1)
        self.remote.data["employee.get"] = [{"id": 5, "firstname": "Ann"}]
        engine = self._engine(
            SyncSettings(page_size=2, full_refresh_entities=["projects"])
        )
        engine.sync_all(entities=["projects", "employees"])

        self.remote.execute.reset_mock()
        self.now = T0 + timedelta(hours=1)
        run = engine.sync_all(entities=["projects", "employees"])

        assert run.get("projects").mode == "full"
        assert self.remote.calls("project.get")[0].args[1] == ()
        assert run.get("employees").mode == "incremental"
        assert self.remote.calls("employee.get")[0].args[1] != ()

    def test_hours_link_to_employees_and_projects(self):
        self.remote.data["project.get"] = projects(1, start=10)
        self.remote.data["employee.get"] = [{"id": 5, "firstname": "Ann"}]
        self.remote.data["hour.get"] = [
            {
                "id": 100,
                "employee": {"id": 5},
                "offerprojectbase": {"id": 10},
                "date": gripp_date("2024-02-28"),
                "amount": "1.5",
            },
            {"id": 101, "employee": {"id": 5}, "offerprojectbase": {"id": 99}, "date": gripp_date("2024-02-28")},
        ]

        run = self.engine.sync_all(entities=["projects", "employees", "hours"])

        assert run.success
        hour = self.uow.hours.find_by_remote_id(100)
        assert hour["employee_id"] == self.uow.employees.local_id_for(5)
        assert hour["project_id"] == self.uow.projects.local_id_for(10)
        assert self.uow.hours.find_by_remote_id(101)["project_id"] is None

    def test_invoice_lines_from_payload(self):
        self.remote.data["invoice.get"] = [
            {
                "id": 1,
                "number": 2024001,
                "date": gripp_date("2024-02-01"),
                "totalinclvat": "121",
                "invoicelines": [
                    {"id": 11, "description": "Design", "amount": 1, "sellingprice": "100"},
                    {"id": 12, "description": "Hosting", "amount": 1, "sellingprice": "0"},
                ],
            }
        ]

        result = self.engine.sync_invoices()

        assert result.rows_synced == 1
        assert self.remote.calls("invoiceline.get") == []
        invoice_id = self.uow.invoices.local_id_for(1)
        lines = self.uow.invoice_lines.find_by_parent(invoice_id)
        assert [line["description"] for line in lines] == ["Design", "Hosting"]

    def test_invoice_lines_fetched_when_missing(self):
        self.remote.data["invoice.get"] = [{"id": 1, "date": gripp_date("2024-02-01")}]
        self.remote.data["invoiceline.get"] = [
            {"id": 11, "invoice": 1, "description": "Design", "amount": 2, "sellingprice": "50"},
            {"id": 21, "invoice": 2, "description": "Other invoice"},
        ]

        self.engine.sync_invoices()

        calls = self.remote.calls("invoiceline.get")
        assert len(calls) == 1
        assert calls[0].args[1][0].value == 1
        lines = self.uow.invoice_lines.find_by_parent(self.uow.invoices.local_id_for(1))
        assert len(lines) == 1
        assert lines[0]["amount"] == 2.0

    def test_invoice_lines_fetched_across_pages(self):
        self.remote.data["invoice.get"] = [{"id": 1, "date": gripp_date("2024-02-01")}]
        self.remote.data["invoiceline.get"] = [
            {"id": 10 + i, "invoice": 1, "description": f"Line {i}"} for i in range(5)
        ]

        result = self.engine.sync_invoices()

        offsets = [c.args[2].paging.firstresult for c in self.remote.calls("invoiceline.get")]
        assert offsets == [0, 2, 4]
        assert result.rows_skipped == 0
        lines = self.uow.invoice_lines.find_by_parent(self.uow.invoices.local_id_for(1))
        assert [line["remote_id"] for line in lines] == [10, 11, 12, 13, 14]

    def test_invoice_lines_failing_on_later_page_keep_old_lines(self):
        invoice = {
            "id": 1,
            "date": gripp_date("2024-02-01"),
            "invoicelines": [{"id": 11, "description": "A"}],
        }
        self.remote.data["invoice.get"] = [invoice]
        self.engine.sync_invoices()

        del invoice["invoicelines"]
        self.remote.data["invoiceline.get"] = [
            {"id": 20 + i, "invoice": 1, "description": f"Line {i}"} for i in range(3)
        ]
        self.remote.errors[("invoiceline.get", 2)] = ServerError("500")
        result = self.engine.sync_invoices(incremental=False)

        assert result.rows_skipped == 1
        lines = self.uow.invoice_lines.find_by_parent(self.uow.invoices.local_id_for(1))
        assert [line["remote_id"] for line in lines] == [11]

    def test_invoice_lines_replaced_on_resync(self):
        invoice = {
            "id": 1,
            "date": gripp_date("2024-02-01"),
            "invoicelines": [{"id": 11, "description": "A"}, {"id": 12, "description": "B"}],
        }
        self.remote.data["invoice.get"] = [invoice]
        self.engine.sync_invoices()

        invoice["invoicelines"] = [{"id": 12, "description": "B"}]
        self.engine.sync_invoices(incremental=False)

        lines = self.uow.invoice_lines.find_by_parent(self.uow.invoices.local_id_for(1))
        assert [line["remote_id"] for line in lines] == [12]

    def test_failed_line_fetch_keeps_old_lines(self):
        invoice = {
            "id": 1,
            "date": gripp_date("2024-02-01"),
            "invoicelines": [{"id": 11, "description": "A"}, {"id": 12, "description": "B"}],
        }
        self.remote.data["invoice.get"] = [invoice]
        self.engine.sync_invoices()

        del invoice["invoicelines"]
        self.remote.errors["invoiceline.get"] = ServerError("500")
        result = self.engine.sync_invoices(incremental=False)

        assert result.status == "success"
        assert result.rows_skipped == 1
        lines = self.uow.invoice_lines.find_by_parent(self.uow.invoices.local_id_for(1))
        assert len(lines) == 2

    def test_absence_requests_with_lines(self):
        self.remote.data["employee.get"] = [{"id": 5, "firstname": "Ann"}]
        self.remote.data["absencerequest.get"] = [
            {
                "id": 20,
                "employee": {"id": 5},
                "absencetype": {"id": 1, "searchname": "Verlof"},
                "absencerequestline": [
                    {"id": 31, "date": gripp_date("2024-03-04"), "amount": "8"},
                    {"id": 32, "amount": "8"},
                ],
            }
        ]

        run = self.engine.sync_all(entities=["employees", "absences"])

        result = run.get("absences")
        assert result.rows_synced == 1
        assert result.rows_skipped == 1
        request = self.uow.absence_requests.find_by_remote_id(20)
        assert request["employee_id"] == self.uow.employees.local_id_for(5)
        lines = self.uow.absence_request_lines.find_by_parent(request["id"])
        assert [line["date"] for line in lines] == ["2024-03-04"]

    def test_request_stop_finishes_current_entity(self):
        self.remote.data["project.get"] = projects(1)
        self.remote.on_call = lambda method: self.engine.request_stop()

        run = self.engine.sync_all()

        assert run.stopped
        assert [r.entity for r in run.entities] == ["projects"]
        assert run.get("projects").status == "success"
        assert self.remote.calls("employee.get") == []
        assert self.uow.projects.count() == 1
        assert not self.engine.is_running

    def test_only_due_skips_recent_entities(self):
        self.remote.data["project.get"] = projects(1)
        self.engine.sync_all(entities=["projects"])
        self.uow.sync_status.set_interval("projects", 600)

        self.remote.execute.reset_mock()
        self.now = T0 + timedelta(minutes=5)
        run = self.engine.sync_all(only_due=True)

        assert run.get("projects").status == "skipped"
        assert self.remote.calls("project.get") == []
        assert run.get("employees").status == "success"
        assert run.success

        self.now = T0 + timedelta(minutes=11)
        run = self.engine.sync_all(entities=["projects"], only_due=True)
        assert run.get("projects").status == "success"

    def test_unknown_entity(self):
        with pytest.raises(ValueError):
            self.engine.sync_all(entities=["tasks"])

        with pytest.raises(ValueError):
            self.engine.sync_entity("tasks")

    def test_single_entity_failure_is_recorded(self):
        self.remote.errors["employee.get"] = RemoteAuthError("Invalid API token")

        with pytest.raises(RemoteAuthError):
            self.engine.sync_employees()

        assert self.uow.sync_status.get("employees").last_sync_status == STATUS_ERROR
        assert not self.uow.in_transaction
