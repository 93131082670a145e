import logging
from datetime import timedelta
from typing import Any, Optional

from fastapi import (
    Body,
    Depends,
    FastAPI,
    File,
    HTTPException,
    Request,
    Response,
    UploadFile,
)
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from database import SessionLocal, engine, init_db
from errors import AuthError, NotFoundError, StoreError, ValidationFailed
from formatting import format_currency, format_payment_method, format_percentage
from models import TransactionType
from periods import resolve_period
from schemas import (
    AnalysisOut,
    CategoryOut,
    CategoryUpdateIn,
    DashboardOut,
    ProfileOut,
    ProfileUpdateIn,
    ResetPasswordIn,
    SessionOut,
    StatusChangeIn,
    TransactionOut,
    UpdateUserIn,
)
from services import (
    AuthService,
    ProfileService,
    SessionInfo,
    TransactionFilters,
    TransactionService,
)
from store import BlobStorage, ChangeFeed, install_change_feed
from validation import (
    parse_category_form,
    parse_sign_in_form,
    parse_sign_up_form,
    parse_transaction_form,
)
from workspace import FinanceWorkspace, WorkspaceRegistry

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"


def _token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


def _store_failure(workspace: FinanceWorkspace) -> HTTPException:
    error = workspace.last_error
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    return HTTPException(status_code=400, detail=str(error or "Operation failed"))


def _transaction_payload(
    txn: TransactionOut, workspace: FinanceWorkspace
) -> dict[str, Any]:
    category = workspace.category(txn.category_id)
    payload = txn.model_dump(mode="json")
    payload["category"] = category.model_dump()
    payload["method_label"] = format_payment_method(txn.method)
    return payload


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    storage: Optional[BlobStorage] = None,
) -> FastAPI:
    settings = settings or get_settings()
    owns_database = session_factory is None
    session_factory = session_factory or SessionLocal
    storage = storage or BlobStorage(settings.storage_dir, settings.public_base_url)
    feed = ChangeFeed()
    install_change_feed(session_factory, feed)
    registry = WorkspaceRegistry(
        session_factory, feed, max_age=timedelta(hours=settings.session_max_age_hours)
    )

    app = FastAPI(title="Finance Tracker")
    app.state.settings = settings
    app.state.registry = registry
    app.state.storage = storage

    @app.on_event("startup")
    def startup_event():
        if owns_database:
            init_db(engine)
        logger.info("app_started")

    @app.on_event("shutdown")
    def shutdown_event():
        registry.close_all()

    @app.exception_handler(ValidationFailed)
    async def validation_failed_handler(request: Request, exc: ValidationFailed):
        return JSONResponse(
            status_code=422, content={"detail": "Invalid input", "errors": exc.errors}
        )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return JSONResponse(status_code=401, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        status_code = 404 if isinstance(exc, NotFoundError) else 400
        logger.warning(f"store_error: path={request.url.path} error={exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"unexpected_error: path={request.url.path}")
        return JSONResponse(
            status_code=500, content={"detail": "Something went wrong, try again"}
        )

    def get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def auth_service(db: Session = Depends(get_db)) -> AuthService:
        return AuthService(db, settings.secret_key)

    def current_session(
        request: Request, auth: AuthService = Depends(auth_service)
    ) -> SessionInfo:
        token = _token_from_request(request)
        info = auth.get_session(token, settings.session_max_age_hours)
        if info is None:
            if token:
                registry.close(token)
            raise AuthError("Auth session missing")
        return info

    def current_workspace(
        info: SessionInfo = Depends(current_session),
    ) -> FinanceWorkspace:
        workspace = registry.get(info.access_token)
        if workspace is None:
            workspace = registry.open(info.access_token, info.profile.id)
        return workspace

    # -- auth -------------------------------------------------------------

    @app.post("/auth/sign-up", status_code=201, response_model=ProfileOut)
    def sign_up(
        payload: dict[str, Any] = Body(...),
        auth: AuthService = Depends(auth_service),
    ):
        data = parse_sign_up_form(payload).unwrap()
        try:
            return auth.sign_up(data.email, data.password, data.full_name)
        except AuthError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/auth/sign-in", response_model=SessionOut)
    def sign_in(
        response: Response,
        payload: dict[str, Any] = Body(...),
        auth: AuthService = Depends(auth_service),
    ):
        data = parse_sign_in_form(payload).unwrap()
        info = auth.sign_in(data.email, data.password)
        registry.open(info.access_token, info.profile.id)
        response.set_cookie(
            SESSION_COOKIE,
            info.access_token,
            httponly=True,
            samesite="lax",
            max_age=settings.session_max_age_hours * 3600,
        )
        return SessionOut(
            access_token=info.access_token,
            user=ProfileOut.model_validate(info.profile),
        )

    @app.get("/auth/session", response_model=Optional[SessionOut])
    def get_session(request: Request, auth: AuthService = Depends(auth_service)):
        token = _token_from_request(request)
        info = auth.get_session(token, settings.session_max_age_hours)
        if info is None:
            if token:
                registry.close(token)
            return None
        return SessionOut(
            access_token=info.access_token,
            user=ProfileOut.model_validate(info.profile),
        )

    @app.post("/auth/sign-out", status_code=204)
    def sign_out(request: Request, auth: AuthService = Depends(auth_service)):
        token = _token_from_request(request)
        info = auth.get_session(token, settings.session_max_age_hours)
        if info is not None:
            user_id = info.profile.id
            auth.sign_out(token)
            registry.close_user(user_id)
        response = Response(status_code=204)
        response.delete_cookie(SESSION_COOKIE)
        return response

    @app.post("/auth/reset-password")
    def reset_password(
        data: ResetPasswordIn, auth: AuthService = Depends(auth_service)
    ):
        token = auth.reset_password(data.email)
        if token:
            logger.debug(f"password_reset_token: token={token}")
        # same answer whether or not the address is registered
        return {"ok": True}

    @app.post("/auth/update-user", response_model=ProfileOut)
    def update_user(
        request: Request,
        data: UpdateUserIn,
        auth: AuthService = Depends(auth_service),
    ):
        profile = auth.update_user(data, _token_from_request(request))
        if data.password:
            registry.close_user(profile.id)
        return profile

    # -- profile ----------------------------------------------------------

    @app.get("/profile", response_model=ProfileOut)
    def get_profile(
        info: SessionInfo = Depends(current_session), db: Session = Depends(get_db)
    ):
        return ProfileService(db, info.profile.id).get()

    @app.patch("/profile", response_model=ProfileOut)
    def update_profile(
        data: ProfileUpdateIn,
        info: SessionInfo = Depends(current_session),
        db: Session = Depends(get_db),
    ):
        return ProfileService(db, info.profile.id).update(data)

    @app.post("/profile/avatar")
    async def upload_avatar(
        file: UploadFile = File(...),
        info: SessionInfo = Depends(current_session),
        db: Session = Depends(get_db),
    ):
        content = await file.read()
        url = ProfileService(db, info.profile.id).upload_avatar(
            file.filename or "", content, storage
        )
        return {"avatar_url": url}

    @app.get("/storage/{bucket}/{path:path}")
    def storage_object(bucket: str, path: str):
        try:
            target = storage.open(bucket, path)
        except StoreError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return FileResponse(target)

    # -- aggregates -------------------------------------------------------

    @app.get("/dashboard")
    def dashboard(workspace: FinanceWorkspace = Depends(current_workspace)):
        summary: DashboardOut = workspace.dashboard
        payload = summary.model_dump()
        payload["category_legend"] = [
            {**workspace.category(slice_.name).model_dump(), "value": slice_.value}
            for slice_ in summary.categories
        ]
        payload["labels"] = {
            "balance": format_currency(summary.balance),
            "income": format_currency(summary.income),
            "expenses": format_currency(summary.expenses),
            "income_change": format_percentage(summary.income_change),
            "expenses_change": format_percentage(summary.expenses_change),
        }
        payload["unread_count"] = workspace.unread_count
        return payload

    @app.get("/analysis", response_model=AnalysisOut)
    def analysis(workspace: FinanceWorkspace = Depends(current_workspace)):
        return workspace.analysis

    # -- transactions -----------------------------------------------------

    @app.get("/transactions")
    def list_transactions(
        period: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        category: Optional[str] = None,
        type: Optional[str] = None,
        workspace: FinanceWorkspace = Depends(current_workspace),
        db: Session = Depends(get_db),
    ):
        try:
            filters = TransactionFilters(
                period=resolve_period(period, start, end),
                type=TransactionType(type) if type and type != "all" else None,
                category_id=category if category and category != "all" else None,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        rows = TransactionService(db, workspace.user_id).list(filters)
        return [
            _transaction_payload(TransactionOut.from_row(row), workspace)
            for row in rows
        ]

    @app.post("/transactions", status_code=201)
    def create_transaction(
        payload: dict[str, Any] = Body(...),
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        data = parse_transaction_form(payload).unwrap()
        txn = workspace.add_transaction(data)
        if txn is None:
            raise _store_failure(workspace)
        return _transaction_payload(txn, workspace)

    @app.put("/transactions/{transaction_id}")
    def update_transaction(
        transaction_id: str,
        payload: dict[str, Any] = Body(...),
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        data = parse_transaction_form(payload).unwrap()
        txn = workspace.update_transaction(transaction_id, data)
        if txn is None:
            raise _store_failure(workspace)
        return _transaction_payload(txn, workspace)

    @app.post("/transactions/{transaction_id}/status")
    def change_transaction_status(
        transaction_id: str,
        data: StatusChangeIn,
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        txn = workspace.change_status(transaction_id, data.status)
        if txn is None:
            raise _store_failure(workspace)
        return _transaction_payload(txn, workspace)

    @app.delete("/transactions/{transaction_id}", status_code=204)
    def delete_transaction(
        transaction_id: str,
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        if not workspace.delete_transaction(transaction_id):
            raise _store_failure(workspace)
        return Response(status_code=204)

    # -- categories -------------------------------------------------------

    @app.get("/categories", response_model=list[CategoryOut])
    def list_categories(workspace: FinanceWorkspace = Depends(current_workspace)):
        return workspace.categories.all()

    @app.post("/categories", status_code=201, response_model=CategoryOut)
    def create_category(
        payload: dict[str, Any] = Body(...),
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        data = parse_category_form(payload).unwrap()
        category = workspace.create_category(data)
        if category is None:
            raise _store_failure(workspace)
        return category

    @app.patch("/categories/{category_id}", response_model=CategoryOut)
    def update_category(
        category_id: str,
        data: CategoryUpdateIn,
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        category = workspace.update_category(category_id, data)
        if category is None:
            raise _store_failure(workspace)
        return category

    @app.delete("/categories/{category_id}", status_code=204)
    def delete_category(
        category_id: str,
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        if not workspace.delete_category(category_id):
            raise _store_failure(workspace)
        return Response(status_code=204)

    # -- notifications ----------------------------------------------------

    @app.get("/notifications")
    def list_notifications(workspace: FinanceWorkspace = Depends(current_workspace)):
        return {
            "items": [n.model_dump(mode="json") for n in workspace.notifications],
            "unread_count": workspace.unread_count,
        }

    @app.post("/notifications/read-all")
    def mark_all_notifications_read(
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        if not workspace.mark_all_read():
            raise _store_failure(workspace)
        return {"unread_count": workspace.unread_count}

    @app.post("/notifications/{notification_id}/read")
    def mark_notification_read(
        notification_id: str,
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        if not workspace.mark_read(notification_id):
            raise _store_failure(workspace)
        return {"unread_count": workspace.unread_count}

    @app.delete("/notifications/{notification_id}", status_code=204)
    def delete_notification(
        notification_id: str,
        workspace: FinanceWorkspace = Depends(current_workspace),
    ):
        if not workspace.delete_notification(notification_id):
            raise _store_failure(workspace)
        return Response(status_code=204)

    @app.get("/toasts")
    def drain_toasts(workspace: FinanceWorkspace = Depends(current_workspace)):
        return [
            {"kind": t.kind, "title": t.title, "description": t.description}
            for t in workspace.drain_toasts()
        ]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
