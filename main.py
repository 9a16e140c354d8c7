import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from database import (
    create_db_engine,
    describe_database,
    init_schema,
    make_session_factory,
    ping,
    session_scope,
)
from schemas import ErrorOut, FinanceYearOut, UploadResultOut
from services import (
    FinanceQueryService,
    FinanceUploadService,
    InvalidFormat,
    StorageFailure,
    UploadRejected,
    UserNotFound,
    parse_year,
)
from uploads import stored_upload, validate_upload


logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


def error_response(
    status_code: int, error: str, details: Optional[str] = None
) -> JSONResponse:
    body = ErrorOut(error=error, details=details)
    return JSONResponse(
        status_code=status_code, content=body.model_dump(exclude_none=True)
    )


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def process_upload(
    session_factory: sessionmaker[Session],
    user_id: str,
    year: int,
    content: bytes,
    filename: Optional[str],
    upload_dir: Path,
) -> UploadResultOut:
    with stored_upload(content, filename, upload_dir) as path:
        with session_scope(session_factory) as session:
            return FinanceUploadService(session).process_file(user_id, year, path)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = app.state.engine
    init_schema(engine)
    logger.info(f"database_connected: {describe_database(engine)}")
    yield
    engine.dispose()
    logger.info("database_disposed")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Financial Visualization", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = create_db_engine(settings.database_url)
    app.state.session_factory = make_session_factory(app.state.engine)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")

    @app.get("/", response_class=HTMLResponse)
    def dashboard(request: Request):
        return templates.TemplateResponse(
            request,
            "dashboard.html",
            {"max_upload_mb": settings.max_upload_bytes // (1024 * 1024)},
        )

    @app.get("/api/health")
    def health(request: Request):
        try:
            ping(request.app.state.engine)
        except SQLAlchemyError as exc:
            logger.warning(f"health_check_failed: error={exc}")
            return error_response(503, "Database unavailable", str(exc))
        return {"status": "ok", "database": "connected"}

    @app.post(
        "/api/finances/upload/{user_id}/{year}",
        response_model=UploadResultOut,
        responses={400: {"model": ErrorOut}, 404: {"model": ErrorOut}, 500: {"model": ErrorOut}},
    )
    async def upload_finances(
        request: Request,
        user_id: str,
        year: str,
        file: Optional[UploadFile] = File(None),
    ):
        if file is None:
            return error_response(400, "No file uploaded")
        try:
            year_value = parse_year(year)
            # read one byte past the ceiling so oversized payloads are detectable
            content = await file.read(settings.max_upload_bytes + 1)
            validate_upload(
                file.filename, file.content_type, len(content), settings.max_upload_bytes
            )
        except UploadRejected as exc:
            logger.info(f"upload_rejected: user_id={user_id} reason={exc.message}")
            return error_response(400, exc.message, exc.details)
        finally:
            await file.close()

        try:
            return await asyncio.to_thread(
                process_upload,
                request.app.state.session_factory,
                user_id,
                year_value,
                content,
                file.filename,
                settings.upload_dir,
            )
        except UserNotFound as exc:
            logger.info(f"upload_user_not_found: user_id={user_id}")
            return error_response(404, exc.message, exc.details)
        except (InvalidFormat, UploadRejected) as exc:
            return error_response(400, exc.message, exc.details)
        except StorageFailure as exc:
            return error_response(500, exc.message, exc.details)
        except Exception:
            logger.exception(f"upload_failed: user_id={user_id} year={year_value}")
            return error_response(500, "Failed to process file")

    @app.get(
        "/api/finances/{user_id}/{year}",
        response_model=FinanceYearOut,
        responses={404: {"model": ErrorOut}, 500: {"model": ErrorOut}},
    )
    def get_finances(user_id: str, year: str, db: Session = Depends(get_db)):
        try:
            return FinanceQueryService(db).year_overview(user_id, parse_year(year))
        except UploadRejected as exc:
            return error_response(400, exc.message, exc.details)
        except UserNotFound as exc:
            return error_response(404, exc.message, exc.details)
        except StorageFailure as exc:
            return error_response(500, exc.message, exc.details)

    return app


def main():
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
