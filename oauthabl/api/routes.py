from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from oauthabl.api.schemas import (
    ArchiveResponse,
    ChangePasswordRequest,
    ClientCreateRequest,
    ClientResponse,
    ClientUpdateRequest,
    CodeIssuedResponse,
    CredentialChangeResponse,
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    RegistrationResponse,
    ResendEmailVerificationRequest,
    ResetPasswordRequest,
    SessionResponse,
    UserDeletionResponse,
    UserResponse,
)
from oauthabl.logging import get_logger
from oauthabl.service.runtime import get_runtime
from oauthabl.service.users import CredentialChange
from oauthabl.storage.models import Client

logger = get_logger(__name__)

clients_router = APIRouter(prefix="/clients", tags=["clients"])
oauth_router = APIRouter(prefix="/oauth/{client_id}", tags=["oauth"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_client(
    client_id: str,
    authorization: Optional[str] = Header(None),
) -> Client:
    """Authenticate the calling tenant application by its client secret."""
    runtime = get_runtime()
    return await runtime.authenticator.authenticate(client_id, _bearer_token(authorization))


async def require_admin_key(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> None:
    expected = get_runtime().settings.admin_api_key
    if not expected:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        logger.warning("admin_key_denied")
        raise _http_error("unauthorized", "invalid admin key", status_code=401)


def _credential_change_response(change: CredentialChange) -> CredentialChangeResponse:
    return CredentialChangeResponse(
        session=SessionResponse.from_session(change.session),
        revoked=ArchiveResponse.from_result(change.revoked),
    )


# -- client registry ---------------------------------------------------------


@clients_router.post(
    "", response_model=Envelope, status_code=201, dependencies=[Depends(require_admin_key)]
)
async def create_client(body: ClientCreateRequest):
    runtime = get_runtime()
    client = await runtime.clients.create(body.name, **(body.model_extra or {}))
    return Envelope(status="ok", data=ClientResponse.from_client(client))


@clients_router.get("", response_model=Envelope, dependencies=[Depends(require_admin_key)])
async def list_clients():
    runtime = get_runtime()
    clients = await runtime.clients.list()
    return Envelope(
        status="ok", data=[ClientResponse.from_client(client) for client in clients]
    )


@clients_router.get(
    "/{client_id}", response_model=Envelope, dependencies=[Depends(require_admin_key)]
)
async def get_client_record(client_id: str):
    runtime = get_runtime()
    client = await runtime.clients.get(client_id)
    return Envelope(status="ok", data=ClientResponse.from_client(client))


@clients_router.patch(
    "/{client_id}", response_model=Envelope, dependencies=[Depends(require_admin_key)]
)
async def update_client(client_id: str, body: ClientUpdateRequest):
    runtime = get_runtime()
    client = await runtime.clients.update(client_id, **body.changes())
    return Envelope(status="ok", data=ClientResponse.from_client(client))


@clients_router.delete(
    "/{client_id}", response_model=Envelope, dependencies=[Depends(require_admin_key)]
)
async def delete_client(client_id: str):
    runtime = get_runtime()
    await runtime.clients.delete(client_id)
    return Envelope(status="ok", data={"deleted": True, "client_id": client_id})


# -- users -------------------------------------------------------------------


@oauth_router.post("/users", response_model=Envelope, status_code=201)
async def register_user(body: RegisterRequest, client: Client = Depends(get_client)):
    """Register a user under the calling client.

    With ``verify_email`` the response carries the email verification code for
    the client to deliver and no session; otherwise a fresh session is issued.
    """
    runtime = get_runtime()
    registration = await runtime.users.register(
        client.id,
        password=body.password,
        username=body.username,
        email=body.email,
        verify_email=body.verify_email,
    )
    return Envelope(
        status="ok",
        data=RegistrationResponse(
            user=UserResponse.from_user(registration.user),
            session=(
                SessionResponse.from_session(registration.session)
                if registration.session
                else None
            ),
            code=registration.code,
        ),
    )


@oauth_router.get("/users", response_model=Envelope)
async def list_users(client: Client = Depends(get_client)):
    runtime = get_runtime()
    users = await runtime.users.list(client.id)
    return Envelope(status="ok", data=[UserResponse.from_user(user) for user in users])


@oauth_router.delete("/users/{user_id}", response_model=Envelope)
async def delete_user(user_id: str, client: Client = Depends(get_client)):
    runtime = get_runtime()
    deletion = await runtime.users.delete(client.id, user_id)
    return Envelope(
        status="ok",
        data=UserDeletionResponse(
            user_id=deletion.user_id,
            sessions=ArchiveResponse.from_result(deletion.sessions),
        ),
    )


@oauth_router.post("/users/{user_id}/password", response_model=Envelope)
async def change_password(
    user_id: str, body: ChangePasswordRequest, client: Client = Depends(get_client)
):
    runtime = get_runtime()
    change = await runtime.users.change_password(
        client.id, user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=_credential_change_response(change))


# -- sessions ----------------------------------------------------------------


@oauth_router.get("/sessions/{user_id}", response_model=Envelope)
async def list_sessions(user_id: str, client: Client = Depends(get_client)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list(client.id, user_id)
    return Envelope(
        status="ok", data=[SessionResponse.from_session(session) for session in sessions]
    )


@oauth_router.delete("/sessions/{user_id}", response_model=Envelope)
async def archive_sessions(user_id: str, client: Client = Depends(get_client)):
    runtime = get_runtime()
    result = await runtime.sessions.archive_all(client.id, user_id)
    return Envelope(status="ok", data=ArchiveResponse.from_result(result))


@oauth_router.delete("/sessions/{user_id}/{session_id}", response_model=Envelope)
async def archive_session(user_id: str, session_id: str, client: Client = Depends(get_client)):
    runtime = get_runtime()
    await runtime.sessions.archive(client.id, user_id, session_id)
    return Envelope(status="ok", data={"archived": True})


@oauth_router.post("/sessions/{user_id}/{session_id}/refresh", response_model=Envelope)
async def refresh_session(user_id: str, session_id: str, client: Client = Depends(get_client)):
    runtime = get_runtime()
    session = await runtime.sessions.create_or_update(
        client.id, user_id, session_id=session_id
    )
    return Envelope(status="ok", data=SessionResponse.from_session(session))


@oauth_router.get("/users/{user_property}/{user_identifier}", response_model=Envelope)
async def find_user(
    user_property: str,
    user_identifier: str,
    client: Client = Depends(get_client),
):
    runtime = get_runtime()
    user = await runtime.users.find(client.id, user_property, user_identifier)
    sessions = await runtime.sessions.list(client.id, user.id)
    return Envelope(status="ok", data=UserResponse.from_user(user, sessions=len(sessions)))


# -- flows -------------------------------------------------------------------


@oauth_router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, client: Client = Depends(get_client)):
    runtime = get_runtime()
    session = await runtime.users.login(client.id, body.identifier, body.password)
    return Envelope(status="ok", data=SessionResponse.from_session(session))


@oauth_router.post("/verify-email", response_model=Envelope)
async def verify_email(body: EmailVerificationRequest, client: Client = Depends(get_client)):
    runtime = get_runtime()
    session = await runtime.users.verify_email(client.id, body.email, body.code)
    return Envelope(status="ok", data=SessionResponse.from_session(session))


@oauth_router.post("/resend-email-verification", response_model=Envelope)
async def resend_email_verification(
    body: ResendEmailVerificationRequest, client: Client = Depends(get_client)
):
    runtime = get_runtime()
    code = await runtime.users.request_email_verification(client.id, body.email)
    return Envelope(status="ok", data=CodeIssuedResponse(code=code))


@oauth_router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, client: Client = Depends(get_client)):
    runtime = get_runtime()
    code = await runtime.users.request_password_reset(client.id, body.identifier)
    return Envelope(status="ok", data=CodeIssuedResponse(code=code))


@oauth_router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest, client: Client = Depends(get_client)):
    runtime = get_runtime()
    change = await runtime.users.reset_password(
        client.id, body.identifier, body.code, body.new_password
    )
    return Envelope(status="ok", data=_credential_change_response(change))
