import csv
import logging
from datetime import datetime, timedelta
from io import StringIO

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database import Base, make_session_factory
from main import create_app
from models import MovementType, UserRole
from periods import local_now
from repository import SqlRepository
from schemas import MovementIn, UserIn
from sessions import issue_session_token


def make_settings() -> Settings:
    return Settings(
        database_url="sqlite:///:memory:",
        timezone="UTC",
        session_secret="test-secret",
        session_cookie="movements_session",
        session_max_age_hours=1,
        log_level="INFO",
        max_report_buckets=2000,
    )


def make_app(repository_class=SqlRepository):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    repository = repository_class(make_session_factory(engine))
    settings = make_settings()
    admin = repository.create_user(
        UserIn(name="Admin", email="admin@example.com", role=UserRole.ADMIN)
    )
    ana = repository.create_user(UserIn(name="Ana", email="ana@example.com"))
    bob = repository.create_user(UserIn(name="Bob", email="bob@example.com"))
    app = create_app(settings=settings, repository=repository)
    return app, repository, settings, {"admin": admin, "ana": ana, "bob": bob}


def client_for(
    app, settings: Settings, user=None, raise_server_exceptions: bool = True
) -> TestClient:
    client = TestClient(app, raise_server_exceptions=raise_server_exceptions)
    if user is not None:
        token = issue_session_token(settings, user.id)
        client.cookies.set(settings.session_cookie, token)
    return client


def add_movement(repository, user, amount: str, type: MovementType, when: datetime):
    return repository.create_movement(
        user.id,
        MovementIn(amount=amount, description="Seed", type=type, date=when),
    )


def test_requests_without_session_are_unauthenticated() -> None:
    app, _, settings, _ = make_app()
    client = client_for(app, settings)

    response = client.get("/api/movements")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"

    client.cookies.set(settings.session_cookie, "tampered")
    assert client.get("/api/user/me").status_code == 401


def test_user_only_sees_own_movements() -> None:
    app, repository, settings, users = make_app()
    now = datetime(2025, 1, 10, 12, 0)
    add_movement(repository, users["ana"], "10", MovementType.INCOME, now)
    add_movement(repository, users["bob"], "20", MovementType.INCOME, now)
    add_movement(repository, users["bob"], "5", MovementType.EXPENSE, now)

    client = client_for(app, settings, users["ana"])
    body = client.get("/api/movements", params={"userId": users["bob"].id}).json()
    assert {m["user_id"] for m in body["movements"]} == {users["ana"].id}
    assert body["pagination"]["total"] == 1

    admin = client_for(app, settings, users["admin"])
    body = admin.get("/api/movements").json()
    assert body["pagination"]["total"] == 3
    body = admin.get(
        "/api/movements", params={"userId": users["bob"].id, "type": "EXPENSE"}
    ).json()
    assert [m["amount"] for m in body["movements"]] == [5.0]
    assert body["movements"][0]["user"]["email"] == "bob@example.com"


def test_movement_pagination() -> None:
    app, repository, settings, users = make_app()
    start = datetime(2025, 1, 1, 9, 0)
    for day in range(5):
        add_movement(
            repository,
            users["ana"],
            str(day + 1),
            MovementType.INCOME,
            start + timedelta(days=day),
        )

    client = client_for(app, settings, users["ana"])
    body = client.get("/api/movements", params={"page": 2, "limit": 2}).json()
    assert [m["amount"] for m in body["movements"]] == [3.0, 2.0]
    assert body["pagination"] == {"page": 2, "limit": 2, "total": 5, "total_pages": 3}


def test_create_movement_is_owned_by_caller() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["ana"])

    response = client.post(
        "/api/movements",
        json={
            "amount": 42.5,
            "description": "Freelance",
            "type": "INCOME",
            "date": "2025-02-01T10:00:00",
            "userId": users["bob"].id,
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["user_id"] == users["ana"].id
    assert body["amount"] == 42.5
    assert body["date"] == "2025-02-01T10:00:00"


def test_create_movement_validation_errors() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["ana"])

    response = client.post(
        "/api/movements", json={"amount": -1, "description": "", "type": "GIFT"}
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "validation_error"
    assert {d["field"] for d in body["details"]} == {"amount", "description", "type"}

    response = client.post(
        "/api/movements",
        content="{not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400


def test_balance_and_history_are_scoped() -> None:
    app, repository, settings, users = make_app()
    today = local_now(settings.timezone).replace(hour=8, minute=0, second=0, microsecond=0)
    add_movement(repository, users["ana"], "100", MovementType.INCOME, today - timedelta(days=2))
    add_movement(repository, users["ana"], "40", MovementType.EXPENSE, today - timedelta(days=2))
    add_movement(repository, users["ana"], "10", MovementType.INCOME, today)
    add_movement(repository, users["bob"], "999", MovementType.INCOME, today)

    client = client_for(app, settings, users["ana"])
    balance = client.get("/api/movements/balance").json()
    assert balance["total_income"] == 110.0
    assert balance["total_expense"] == 40.0
    assert balance["current_balance"] == 70.0
    assert balance["movement_count"] == 3

    history = client.get("/api/movements/history", params={"days": 2}).json()
    assert [point["balance"] for point in history] == [60.0, 60.0, 70.0]

    assert client.get("/api/movements/history", params={"days": 1000}).status_code == 400


def test_admin_only_routes_reject_users() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["ana"])
    for path in (
        "/api/users",
        f"/api/users/{users['bob'].id}",
        "/api/reports/summary",
        "/api/reports/export",
    ):
        response = client.get(path)
        assert response.status_code == 403, path
        assert response.json()["error"] == "forbidden"

    response = client.put(f"/api/users/{users['ana'].id}", json={"name": "Ana B"})
    assert response.status_code == 403


def test_admin_lists_and_searches_users() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["admin"])

    body = client.get("/api/users").json()
    assert body["pagination"]["total"] == 3

    body = client.get("/api/users", params={"search": "BOB"}).json()
    assert [u["email"] for u in body["users"]] == ["bob@example.com"]


def test_admin_gets_user_with_recent_movements() -> None:
    app, repository, settings, users = make_app()
    for i in range(12):
        add_movement(
            repository,
            users["bob"],
            "1",
            MovementType.EXPENSE,
            datetime(2025, 1, 1) + timedelta(hours=i),
        )
    client = client_for(app, settings, users["admin"])

    body = client.get(f"/api/users/{users['bob'].id}").json()
    assert body["user"]["email"] == "bob@example.com"
    assert len(body["movements"]) == 10
    assert body["movement_count"] == 12

    assert client.get("/api/users/9999").status_code == 404


def test_admin_updates_user_role_and_conflicts() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["admin"])

    response = client.put(f"/api/users/{users['ana'].id}", json={"role": "ADMIN"})
    assert response.status_code == 200
    assert response.json()["user"]["role"] == "ADMIN"

    response = client.put(
        f"/api/users/{users['ana'].id}", json={"email": "bob@example.com"}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"

    response = client.put("/api/users/9999", json={"name": "Nobody"})
    assert response.status_code == 404


def test_admin_cannot_change_own_role() -> None:
    app, repository, settings, users = make_app()
    client = client_for(app, settings, users["admin"])

    response = client.put(f"/api/users/{users['admin'].id}", json={"role": "USER"})
    assert response.status_code == 400
    assert repository.find_user(users["admin"].id).role == UserRole.ADMIN

    response = client.put(
        f"/api/users/{users['admin'].id}", json={"role": "ADMIN", "name": "Boss"}
    )
    assert response.status_code == 200
    assert response.json()["user"]["name"] == "Boss"


def test_user_self_edit_profile() -> None:
    app, repository, settings, users = make_app()
    client = client_for(app, settings, users["ana"])

    assert client.get("/api/user/me").json()["user"]["email"] == "ana@example.com"

    response = client.put("/api/user/me", json={"name": "Ana Maria"})
    assert response.status_code == 200
    assert response.json()["user"]["name"] == "Ana Maria"

    response = client.put("/api/user/me", json={"role": "ADMIN"})
    assert response.status_code == 400
    assert repository.find_user(users["ana"].id).role == UserRole.USER


def test_report_summary() -> None:
    app, repository, settings, users = make_app()
    add_movement(repository, users["ana"], "100", MovementType.INCOME, datetime(2025, 1, 1, 9))
    add_movement(repository, users["ana"], "40", MovementType.EXPENSE, datetime(2025, 1, 1, 18))
    add_movement(repository, users["bob"], "10", MovementType.INCOME, datetime(2025, 1, 3, 9))
    client = client_for(app, settings, users["admin"])

    body = client.get(
        "/api/reports/summary",
        params={"period": "week", "startDate": "2025-01-01", "endDate": "2025-01-03"},
    ).json()
    assert body["start"] == "2025-01-01T00:00:00"
    assert body["end"] == "2025-01-03T23:59:59.999999"
    assert body["labels"] == ["Wed 01 Jan", "Thu 02 Jan", "Fri 03 Jan"]
    assert body["income"] == [100.0, 0.0, 10.0]
    assert body["expense"] == [40.0, 0.0, 0.0]
    assert body["balance"] == [60.0, 60.0, 70.0]
    assert body["total_balance"] == 70.0
    assert [d["label"] for d in body["datasets"]] == [
        "Income",
        "Expense",
        "Cumulative Balance",
    ]

    body = client.get(
        "/api/reports/summary",
        params={
            "period": "week",
            "startDate": "2025-01-01",
            "endDate": "2025-01-03",
            "userIds": str(users["bob"].id),
        },
    ).json()
    assert body["total_income"] == 10.0
    assert body["movement_count"] == 1


def test_report_summary_rejects_bad_parameters() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["admin"])

    assert client.get("/api/reports/summary", params={"period": "decade"}).status_code == 400
    assert (
        client.get(
            "/api/reports/summary",
            params={"startDate": "2025-02-01", "endDate": "2025-01-01"},
        ).status_code
        == 400
    )
    assert client.get("/api/reports/summary", params={"userIds": "1,x"}).status_code == 400


def test_report_export_csv() -> None:
    app, repository, settings, users = make_app()
    add_movement(repository, users["ana"], "100", MovementType.INCOME, datetime(2025, 1, 1, 9))
    add_movement(repository, users["bob"], "25.50", MovementType.EXPENSE, datetime(2025, 1, 2, 9))
    add_movement(repository, users["bob"], "5", MovementType.EXPENSE, datetime(2025, 3, 2, 9))
    client = client_for(app, settings, users["admin"])

    response = client.get(
        "/api/reports/export",
        params={"startDate": "2025-01-01", "endDate": "2025-01-31"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    today = local_now(settings.timezone).date().isoformat()
    assert response.headers["content-disposition"] == (
        f'attachment; filename="movements-report-{today}.csv"'
    )

    rows = list(csv.reader(StringIO(response.text)))
    separator = rows.index([])
    data_rows = rows[1:separator]
    assert len(data_rows) == 2
    assert [row[2] for row in data_rows] == ["bob@example.com", "ana@example.com"]
    assert len(rows[separator + 1 :]) == 4
    assert rows[-1] == ["Final Balance", "", "", "", "74.50"]


def test_report_export_json() -> None:
    app, repository, settings, users = make_app()
    add_movement(repository, users["ana"], "100", MovementType.INCOME, datetime(2025, 1, 1, 9))
    client = client_for(app, settings, users["admin"])

    body = client.get("/api/reports/export", params={"format": "json"}).json()
    assert len(body["movements"]) == 1
    assert body["movements"][0]["user"]["name"] == "Ana"

    assert client.get("/api/reports/export", params={"format": "pdf"}).status_code == 400


class FailingRepository(SqlRepository):
    def find_movements(self, *args, **kwargs):
        raise RuntimeError("database unavailable")


def test_path_parameter_errors_use_error_shape() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["admin"])

    response = client.get("/api/users/abc")
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "validation_error"
    assert body["details"][0]["field"] == "user_id"


def test_unexpected_errors_are_logged_and_hidden(caplog) -> None:
    app, _, settings, users = make_app(repository_class=FailingRepository)
    client = client_for(app, settings, users["ana"], raise_server_exceptions=False)

    with caplog.at_level(logging.ERROR):
        response = client.get("/api/movements")

    assert response.status_code == 500
    assert response.json() == {
        "error": "internal_error",
        "message": "Internal server error",
    }
    assert "database unavailable" not in response.text
    assert "request_failed" in caplog.text


def test_report_summary_rejects_too_many_buckets() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["admin"])

    response = client.get(
        "/api/reports/summary",
        params={"period": "day", "startDate": "2020-01-01", "endDate": "2025-01-01"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_report_dates_outside_datetime_range_are_rejected() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["admin"])

    response = client.get(
        "/api/reports/summary", params={"startDate": "0001-01-01T00:00:00+05:00"}
    )
    assert response.status_code == 400

    response = client.post(
        "/api/movements",
        json={
            "amount": 1,
            "description": "x",
            "type": "INCOME",
            "date": "0001-01-01T00:00:00+05:00",
        },
    )
    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "date"


def test_oversized_query_integers_are_handled() -> None:
    app, _, settings, users = make_app()
    client = client_for(app, settings, users["admin"])
    huge = str(10**20)

    for path in ("/api/movements", "/api/users"):
        response = client.get(path, params={"page": huge})
        assert response.status_code == 400, path
        assert response.json()["details"][0]["field"] == "page"

    response = client.get("/api/movements", params={"userId": huge})
    assert response.status_code == 200
    assert response.json()["movements"] == []

    assert client.get(f"/api/users/{huge}").status_code == 404
    assert client.put(f"/api/users/{huge}", json={"name": "X"}).status_code == 404
    assert client.get("/api/reports/summary", params={"userIds": huge}).status_code == 200


def test_user_search_treats_wildcards_literally() -> None:
    app, repository, settings, users = make_app()
    repository.create_user(UserIn(name="100% Real", email="real@example.com"))
    client = client_for(app, settings, users["admin"])

    body = client.get("/api/users", params={"search": "%"}).json()
    assert [u["name"] for u in body["users"]] == ["100% Real"]

    body = client.get("/api/users", params={"search": "_"}).json()
    assert body["users"] == []


def test_timestamps_use_configured_timezone() -> None:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    repository = SqlRepository(make_session_factory(engine), timezone="Pacific/Kiritimati")
    user = repository.create_user(UserIn(name="Kiri", email="kiri@example.com"))
    movement = add_movement(
        repository, user, "1", MovementType.INCOME, datetime(2025, 1, 1, 9)
    )

    local = local_now("Pacific/Kiritimati")
    for value in (user.created_at, movement.created_at):
        assert abs(value - local) < timedelta(minutes=5)
