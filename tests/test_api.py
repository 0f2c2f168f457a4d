from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from database import Base, build_engine, get_db
from main import app
from models import Frequency, RecurringTransaction, Transaction, TransactionType


@pytest.fixture
def engine():
    eng = build_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def client(engine):
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def cron_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "cron_secret", "s3cret")
    return "s3cret"


def _seed_rule(engine, **overrides) -> int:
    values = dict(
        user_id=1,
        title="Streaming",
        type=TransactionType.expense,
        amount=Decimal("12.99"),
        tags=[],
        frequency=Frequency.monthly,
        interval_count=1,
        start_date=date(2020, 1, 15),
        next_run_at=datetime(2020, 1, 15),
    )
    values.update(overrides)
    with Session(engine) as session:
        rule = RecurringTransaction(**values)
        session.add(rule)
        session.commit()
        return rule.id


def _count_instances(engine) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count(Transaction.id)))


def test_process_rejects_missing_secret(client, cron_secret):
    resp = client.post("/api/recurring/process")
    assert resp.status_code == 401


def test_process_rejects_wrong_secret(client, cron_secret):
    resp = client.post("/api/recurring/process", headers={"X-Cron-Secret": "nope"})
    assert resp.status_code == 401


def test_process_runs_across_all_users(client, engine, cron_secret):
    _seed_rule(engine, user_id=1, next_run_at=datetime(2020, 1, 15))
    _seed_rule(engine, user_id=2, next_run_at=datetime(2020, 1, 15))

    resp = client.post("/api/recurring/process", headers={"X-Cron-Secret": "s3cret"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 2
    assert body["generated"] > 2
    assert body["errors"] == []
    assert body["message"] == "Recurring transactions processed successfully"
    assert _count_instances(engine) == body["generated"]

    again = client.post(
        "/api/recurring/process", headers={"X-Cron-Secret": "s3cret"}
    ).json()
    assert again["generated"] == 0
    assert again["message"] == "No recurring transactions due"


def test_process_without_configured_secret_is_open(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "cron_secret", None)
    resp = client.post("/api/recurring/process")
    assert resp.status_code == 200
    assert resp.json()["processed"] == 0


def test_interactive_run_requires_csrf_token(client):
    resp = client.post("/api/recurring/run")
    assert resp.status_code == 400


def test_interactive_run_reports_toast(client, engine):
    _seed_rule(engine, user_id=1)
    other = _seed_rule(engine, user_id=2)
    token = client.get("/api/csrf-token").json()["token"]

    resp = client.post("/api/recurring/run", headers={"X-CSRF-Token": token})

    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 1
    assert body["toast"] == f"{body['generated']} new transactions generated"
    with Session(engine) as session:
        assert session.get(RecurringTransaction, other).occurrences_created == 0

    quiet = client.post("/api/recurring/run", headers={"X-CSRF-Token": token}).json()
    assert quiet["generated"] == 0
    assert quiet["toast"] is None


def test_create_rule_sets_initial_cursor(client):
    resp = client.post(
        "/api/recurring",
        json={
            "title": "Rent",
            "type": "expense",
            "amount": "950.00",
            "currency_code": "eur",
            "frequency": "monthly",
            "interval_count": 1,
            "start_date": "2024-01-31",
            "occurrences_limit": 12,
        },
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["next_run_at"] == "2024-01-31T00:00:00"
    assert body["currency_code"] == "EUR"
    assert body["is_active"] is True
    assert body["occurrences_created"] == 0


def test_create_rule_validation_error(client):
    resp = client.post(
        "/api/recurring",
        json={
            "title": "Rent",
            "type": "expense",
            "amount": "950.00",
            "frequency": "monthly",
            "interval_count": 0,
            "start_date": "2024-01-31",
        },
    )
    assert resp.status_code == 422


def test_pause_and_resume(client, engine):
    rule_id = _seed_rule(engine)

    paused = client.post(f"/api/recurring/{rule_id}/pause").json()
    assert paused["is_active"] is False

    resumed = client.post(f"/api/recurring/{rule_id}/resume").json()
    assert resumed["is_active"] is True
    assert resumed["next_run_at"] == "2020-01-15T00:00:00"


def test_unknown_rule_is_404(client):
    assert client.post("/api/recurring/999/pause").status_code == 404
    assert client.delete("/api/recurring/999").status_code == 404


def _corrupt_frequency(engine, rule_id: int) -> None:
    with Session(engine) as session:
        session.execute(
            text(
                "UPDATE recurring_transactions SET frequency = 'fortnightly' "
                "WHERE id = :id"
            ),
            {"id": rule_id},
        )
        session.commit()


def test_interactive_run_reports_bad_rule_row(client, engine):
    good = _seed_rule(engine)
    bad = _seed_rule(engine, title="Broken")
    _corrupt_frequency(engine, bad)
    token = client.get("/api/csrf-token").json()["token"]

    resp = client.post("/api/recurring/run", headers={"X-CSRF-Token": token})

    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] == 2
    assert [e["rule_id"] for e in body["errors"]] == [bad]
    with Session(engine) as session:
        assert session.get(RecurringTransaction, good).occurrences_created > 0
    assert client.get("/api/recurring").status_code == 200


def test_process_reports_bad_rule_row(client, engine, cron_secret):
    _seed_rule(engine)
    bad = _seed_rule(engine, title="Broken")
    _corrupt_frequency(engine, bad)

    resp = client.post("/api/recurring/process", headers={"X-Cron-Secret": "s3cret"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["generated"] > 0
    assert [e["rule_id"] for e in body["errors"]] == [bad]


def test_update_frequency_reschedules_from_last_run(client, engine):
    rule_id = _seed_rule(
        engine,
        last_run_at=datetime(2024, 3, 20, 8),
        next_run_at=datetime(2024, 4, 15),
        occurrences_created=7,
    )

    resp = client.patch(f"/api/recurring/{rule_id}", json={"frequency": "weekly"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["frequency"] == "weekly"
    assert body["next_run_at"] == "2024-03-27T00:00:00"
    # No instances exist for the seeded rule.
    assert body["occurrences_created"] == 0


def test_update_title_keeps_schedule(client, engine):
    rule_id = _seed_rule(engine, occurrences_created=4)

    body = client.patch(f"/api/recurring/{rule_id}", json={"title": "Music"}).json()

    assert body["title"] == "Music"
    assert body["next_run_at"] == "2020-01-15T00:00:00"
    assert body["occurrences_created"] == 4


def test_update_validates_the_whole_rule(client, engine):
    rule_id = _seed_rule(engine)

    resp = client.patch(f"/api/recurring/{rule_id}", json={"end_date": "2020-02-10"})
    assert resp.status_code == 400

    resp = client.patch(f"/api/recurring/{rule_id}", json={"interval_count": 0})
    assert resp.status_code == 422

    resp = client.patch(f"/api/recurring/{rule_id}", json={"is_active": False})
    assert resp.status_code == 422


def test_update_unknown_rule_is_404(client):
    assert client.patch("/api/recurring/999", json={"title": "x"}).status_code == 404


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
