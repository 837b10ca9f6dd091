from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.auth import EmailAlreadyRegistered
from medassist import AuthorizationError, PatientNotRegistered, Runtime, ScheduleNotFound
from services.scheduler.main import get_runtime, runtime_lifespan
from shared.contracts.enums import Role
from shared.contracts.models import (
    AuthIdentity,
    DoseLogDTO,
    DoseTakenResponse,
    EscalateResponse,
    LoginRequest,
    LoginResponse,
    NotificationDTO,
    RegisterRequest,
    ScheduleCreate,
    ScheduleDTO,
    UserDTO,
)

bearer_scheme = HTTPBearer(auto_error=False)


def bearer_token(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)) -> str | None:
    return credentials.credentials if credentials is not None else None


def current_identity(request: Request, token: str | None = Depends(bearer_token)) -> AuthIdentity:
    identity = get_runtime(request).auth.authenticate(token)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required.")
    return identity


def require_guardian(identity: AuthIdentity = Depends(current_identity)) -> AuthIdentity:
    if identity.role != Role.GUARDIAN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="This action requires guardian role.")
    return identity


def enforce_rate_limit(request: Request) -> None:
    client_key = request.client.host if request.client else None
    if not get_runtime(request).limiter.allow(client_key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many attempts. Try again later.")


def _raise_for_domain_error(exc: Exception) -> None:
    if isinstance(exc, ScheduleNotFound):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Medication plan not found.") from exc
    if isinstance(exc, AuthorizationError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, PatientNotRegistered):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    raise exc


def create_app(runtime: Runtime | None = None) -> FastAPI:
    app = FastAPI(title="medassist-api", lifespan=lambda a: runtime_lifespan(a, runtime))

    @app.get("/health")
    def health(request: Request) -> dict[str, str | bool]:
        return {
            "ok": True,
            "service": "medassist-api",
            "time": datetime.now(timezone.utc).isoformat(),
            "timezone": get_runtime(request).settings.app_timezone,
        }

    @app.post(
        "/auth/register",
        response_model=LoginResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(enforce_rate_limit)],
    )
    def register(payload: RegisterRequest, request: Request) -> LoginResponse:
        auth = get_runtime(request).auth
        try:
            identity = auth.register_user(
                name=payload.name,
                email=payload.email,
                password=payload.password,
                role=payload.role,
                phone=payload.phone,
                city=payload.city,
            )
        except EmailAlreadyRegistered as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered.") from exc
        return auth.open_session(identity)

    @app.post("/auth/login", response_model=LoginResponse, dependencies=[Depends(enforce_rate_limit)])
    def login(payload: LoginRequest, request: Request) -> LoginResponse:
        session = get_runtime(request).auth.login(payload.email, payload.password)
        if session is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password.")
        return session

    @app.get("/auth/me", response_model=AuthIdentity)
    def me(identity: AuthIdentity = Depends(current_identity)) -> AuthIdentity:
        return identity

    @app.post("/auth/logout")
    def logout(
        request: Request,
        token: str | None = Depends(bearer_token),
        identity: AuthIdentity = Depends(current_identity),
    ) -> dict[str, bool]:
        get_runtime(request).auth.logout(token)
        return {"ok": True}

    @app.get("/users/patients", response_model=list[UserDTO])
    def list_patients(request: Request, identity: AuthIdentity = Depends(require_guardian)) -> list[UserDTO]:
        return get_runtime(request).auth.list_patients()

    @app.get("/schedules", response_model=list[ScheduleDTO])
    def list_schedules(request: Request, identity: AuthIdentity = Depends(current_identity)) -> list[ScheduleDTO]:
        return get_runtime(request).schedules.list_for(identity)

    @app.post("/schedules", response_model=ScheduleDTO, status_code=status.HTTP_201_CREATED)
    def create_schedule(
        payload: ScheduleCreate,
        request: Request,
        identity: AuthIdentity = Depends(require_guardian),
    ) -> ScheduleDTO:
        try:
            return get_runtime(request).flow.create_schedule(identity, payload)
        except PatientNotRegistered as exc:
            _raise_for_domain_error(exc)

    @app.delete("/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_schedule(
        schedule_id: str,
        request: Request,
        identity: AuthIdentity = Depends(require_guardian),
    ) -> None:
        try:
            get_runtime(request).flow.delete_schedule(schedule_id, identity)
        except (ScheduleNotFound, AuthorizationError) as exc:
            _raise_for_domain_error(exc)

    @app.post("/schedules/{schedule_id}/taken", response_model=DoseTakenResponse)
    def mark_taken(
        schedule_id: str,
        request: Request,
        identity: AuthIdentity = Depends(current_identity),
    ) -> DoseTakenResponse:
        try:
            return get_runtime(request).flow.on_dose_taken(schedule_id, identity)
        except (ScheduleNotFound, AuthorizationError) as exc:
            _raise_for_domain_error(exc)

    @app.post("/schedules/{schedule_id}/escalate", response_model=EscalateResponse)
    def escalate_now(
        schedule_id: str,
        request: Request,
        identity: AuthIdentity = Depends(current_identity),
    ) -> EscalateResponse:
        try:
            return get_runtime(request).flow.on_escalate_requested(schedule_id, identity)
        except (ScheduleNotFound, AuthorizationError) as exc:
            _raise_for_domain_error(exc)

    @app.get("/notifications", response_model=list[NotificationDTO])
    def list_notifications(request: Request, identity: AuthIdentity = Depends(current_identity)) -> list[NotificationDTO]:
        return get_runtime(request).notifications.list_visible_to(identity)

    @app.get("/logs", response_model=list[DoseLogDTO])
    def list_logs(request: Request, identity: AuthIdentity = Depends(current_identity)) -> list[DoseLogDTO]:
        current = get_runtime(request)
        schedule_ids = [schedule.id for schedule in current.schedules.list_for(identity)]
        return current.dose_logs.list_for_schedules(schedule_ids)

    return app


app = create_app()
