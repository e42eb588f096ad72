import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from auth import (
    RequestContext,
    get_app_settings,
    get_repository,
    require_admin,
    require_user,
)
from config import Settings, get_settings
from csv_utils import export_movements
from database import create_db_engine, make_session_factory
from errors import AppError, InternalError, ValidationError
from models import MovementType
from periods import local_now
from repository import Repository, SqlRepository
from services import (
    DEFAULT_HISTORY_DAYS,
    MovementService,
    ReportService,
    UserService,
    movement_out,
    parse_user_ids,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

MAX_PAGE_SIZE = 100
MAX_PAGE = 100_000


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level)


def _int_param(
    request: Request,
    name: str,
    default: Optional[int],
    *,
    maximum: Optional[int] = None,
) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(
            details=[{"field": name, "message": "Must be an integer"}]
        ) from exc
    if maximum is not None and value > maximum:
        raise ValidationError(
            details=[{"field": name, "message": f"Must be at most {maximum}"}]
        )
    return value


def pagination_from_request(request: Request) -> tuple[int, int]:
    page = max(_int_param(request, "page", 1, maximum=MAX_PAGE), 1)
    limit = min(max(_int_param(request, "limit", 10), 1), MAX_PAGE_SIZE)
    return page, limit


def movement_type_from_request(request: Request) -> Optional[MovementType]:
    type_param = request.query_params.get("type")
    if not type_param:
        return None
    try:
        return MovementType(type_param.upper())
    except ValueError:
        return None


async def json_body(request: Request) -> object:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Request body must be valid JSON") from exc


@router.get("/movements")
def list_movements(
    request: Request,
    context: RequestContext = Depends(require_user),
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_app_settings),
):
    page, limit = pagination_from_request(request)
    return MovementService(repository, context, settings).list(
        page=page,
        limit=limit,
        type=movement_type_from_request(request),
        user_id=_int_param(request, "userId", None),
    )


@router.post("/movements", status_code=201)
async def create_movement(
    request: Request,
    context: RequestContext = Depends(require_user),
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_app_settings),
):
    payload = await json_body(request)
    return MovementService(repository, context, settings).create(payload)


@router.get("/movements/balance")
def movements_balance(
    request: Request,
    context: RequestContext = Depends(require_user),
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_app_settings),
):
    user_ids = parse_user_ids(request.query_params.get("userIds"))
    return MovementService(repository, context, settings).balance(user_ids)


@router.get("/movements/history")
def movements_history(
    request: Request,
    context: RequestContext = Depends(require_user),
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_app_settings),
):
    days = _int_param(request, "days", DEFAULT_HISTORY_DAYS)
    user_ids = parse_user_ids(request.query_params.get("userIds"))
    return MovementService(repository, context, settings).history(days, user_ids)


@router.get("/users")
def list_users(
    request: Request,
    context: RequestContext = Depends(require_admin),
    repository: Repository = Depends(get_repository),
):
    page, limit = pagination_from_request(request)
    search = request.query_params.get("search")
    return UserService(repository, context).list(page=page, limit=limit, search=search)


@router.get("/users/{user_id}")
def get_user(
    user_id: int,
    context: RequestContext = Depends(require_admin),
    repository: Repository = Depends(get_repository),
):
    return UserService(repository, context).get(user_id)


@router.put("/users/{user_id}")
async def update_user(
    user_id: int,
    request: Request,
    context: RequestContext = Depends(require_admin),
    repository: Repository = Depends(get_repository),
):
    payload = await json_body(request)
    user = UserService(repository, context).update(user_id, payload)
    return {"message": "User updated", "user": user}


@router.get("/user/me")
def current_user(
    context: RequestContext = Depends(require_user),
    repository: Repository = Depends(get_repository),
):
    return {"user": UserService(repository, context).me()}


@router.put("/user/me")
async def update_current_user(
    request: Request,
    context: RequestContext = Depends(require_user),
    repository: Repository = Depends(get_repository),
):
    payload = await json_body(request)
    user = UserService(repository, context).update_profile(payload)
    return {"message": "Profile updated", "user": user}


@router.get("/reports/summary")
def reports_summary(
    request: Request,
    context: RequestContext = Depends(require_admin),
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_app_settings),
):
    params = request.query_params
    return ReportService(repository, settings).summary(
        period=params.get("period"),
        user_ids=parse_user_ids(params.get("userIds")),
        start=params.get("startDate"),
        end=params.get("endDate"),
    )


@router.get("/reports/export")
def reports_export(
    request: Request,
    context: RequestContext = Depends(require_admin),
    repository: Repository = Depends(get_repository),
    settings: Settings = Depends(get_app_settings),
):
    params = request.query_params
    export_format = (params.get("format") or "csv").lower()
    if export_format not in ("csv", "json"):
        raise ValidationError(
            details=[{"field": "format", "message": "Format must be csv or json"}]
        )
    movements = ReportService(repository, settings).export_movements(
        user_ids=parse_user_ids(params.get("userIds")),
        start=params.get("startDate"),
        end=params.get("endDate"),
    )
    if export_format == "json":
        return {"movements": [movement_out(m, include_user=True) for m in movements]}

    csv_text = export_movements(movements)
    today = local_now(settings.timezone).date()
    filename = f"movements-report-{today.isoformat()}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"request_failed: path={request.url.path} error={exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())[1:])
                or "request",
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        error = ValidationError(details=details)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            f"request_failed: method={request.method} path={request.url.path}"
        )
        error = InternalError()
        return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app(
    settings: Optional[Settings] = None, repository: Optional[Repository] = None
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    if repository is None:
        engine = create_db_engine(settings.database_url)
        repository = SqlRepository(
            make_session_factory(engine), timezone=settings.timezone
        )

    app = FastAPI(title="Movements Tracker")
    app.state.settings = settings
    app.state.repository = repository
    register_exception_handlers(app)
    app.include_router(router)
    logger.info(f"app_created: timezone={settings.timezone}")
    return app


def main():
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
