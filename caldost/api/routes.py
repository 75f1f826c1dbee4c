from __future__ import annotations

from typing import List, Optional

from fastapi import (
    APIRouter,
    Cookie,
    Depends,
    File,
    Form,
    Header,
    Path,
    Query,
    Request,
    Response,
    UploadFile,
)

from caldost.api.schemas import (
    AdminCreateRequest,
    AdminResponse,
    ApiKeyCreateRequest,
    ApiKeyResponse,
    CloseComplaintRequest,
    CloseComplaintResponse,
    ComplaintCreateRequest,
    ComplaintCreatedResponse,
    CredentialsRequest,
    DistrictCreateRequest,
    DistrictResponse,
    EmailOtpRequest,
    EmailOtpVerifyRequest,
    Envelope,
    PasswordResetConfirm,
    PhoneOtpRequest,
    PhoneOtpVerifyRequest,
    TokenRefreshRequest,
)
from caldost.logging import bind_principal, get_logger
from caldost.service.access import (
    AuthContext,
    Complainant,
    DistrictAdmin,
    GrantHolder,
    SuperAdmin,
    require_complainant,
    require_district_admin,
    require_super_admin,
)
from caldost.service.attachments import Upload
from caldost.service.auth import SessionBundle
from caldost.service.complaints import complaint_detail
from caldost.service.runtime import get_runtime
from caldost.storage.models import AdminAccount, ApiKeyRecord, ComplaintDomain, District

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


# ---------------------------------------------------------------------------
# principal resolution, evaluated once per request
# ---------------------------------------------------------------------------


async def get_principal(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, access_token)
    bind_principal(ctx.principal_id, ctx.role.value)
    return ctx


async def get_super_admin(ctx: AuthContext = Depends(get_principal)) -> SuperAdmin:
    return require_super_admin(ctx)


async def get_district_admin(ctx: AuthContext = Depends(get_principal)) -> DistrictAdmin:
    return require_district_admin(ctx)


async def get_complainant(ctx: AuthContext = Depends(get_principal)) -> Complainant:
    return require_complainant(ctx)


async def get_grant_holder(
    domain: ComplaintDomain = Path(...),
    complaint_number: str = Path(..., max_length=64),
    token: Optional[str] = Query(None, max_length=128),
) -> GrantHolder:
    """Resolve an access-link token into a capability for one complaint."""
    runtime = get_runtime()
    return await runtime.grants.authorize(domain, complaint_number, token)


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _apply_session_cookies(response: Response, bundle: SessionBundle) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        ACCESS_COOKIE,
        bundle.access_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        bundle.refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _login_envelope(response: Response, bundle: SessionBundle) -> Envelope:
    _apply_session_cookies(response, bundle)
    return Envelope(status="ok", data={"message": "You have logged in successfully.", **bundle.to_dict()})


async def _read_uploads(
    files: Optional[List[UploadFile]], notes: Optional[List[str]]
) -> List[Upload]:
    runtime = get_runtime()
    max_bytes = max(1, runtime.settings.max_attachment_bytes)
    # Reject an oversized batch before any file is read into memory
    runtime.attachments.check_count([f for f in files or [] if f.filename])
    uploads: List[Upload] = []
    for index, file in enumerate(files or []):
        if not file.filename:
            continue
        # Read one byte past the limit so oversized files are detectable
        data = await file.read(max_bytes + 1)
        note = notes[index] if notes and index < len(notes) else None
        uploads.append(
            Upload(
                filename=file.filename,
                content_type=file.content_type,
                data=data,
                note=(note or "").strip() or None,
            )
        )
    return uploads


def _district_response(district: District) -> DistrictResponse:
    return DistrictResponse(
        district_code_alpha=district.district_code_alpha,
        district_code_numeric=district.district_code_numeric,
        district_name=district.district_name,
        assigned_admin_public_user_ids=district.assigned_admin_public_user_ids,
    )


def _admin_response(admin: AdminAccount) -> AdminResponse:
    return AdminResponse(
        public_user_id=admin.public_user_id,
        name=admin.name,
        email=admin.email,
        district_code_alpha=admin.district_code_alpha,
        phone_number=admin.phone_number,
        post=admin.post,
        is_active=admin.is_active,
    )


def _api_key_response(record: ApiKeyRecord, raw_key: Optional[str] = None) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=record.id,
        name=record.name,
        key_prefix=record.key_prefix,
        is_active=record.is_active,
        usage_count=record.usage_count,
        last_used_at=record.last_used_at.isoformat() if record.last_used_at else None,
        created_at=record.created_at.isoformat(),
        api_key=raw_key,
    )


# ---------------------------------------------------------------------------
# auth: super admin
# ---------------------------------------------------------------------------


@router.post("/auth/super-admin/login/email-otp/request", response_model=Envelope, tags=["auth"])
async def super_admin_email_otp_request(body: CredentialsRequest):
    """Step one of super admin email login: check the password, email an OTP."""
    runtime = get_runtime()
    data = await runtime.auth.request_super_admin_email_otp(body.email, body.password)
    return Envelope(status="ok", data=data)


@router.post("/auth/super-admin/login/email-otp/verify", response_model=Envelope, tags=["auth"])
async def super_admin_email_otp_verify(
    body: EmailOtpVerifyRequest, request: Request, response: Response
):
    runtime = get_runtime()
    bundle = await runtime.auth.verify_super_admin_email_otp(
        body.email, body.otp, **_client_meta(request)
    )
    return _login_envelope(response, bundle)


@router.post("/auth/super-admin/login/phone-otp/request", response_model=Envelope, tags=["auth"])
async def super_admin_phone_otp_request(body: PhoneOtpRequest):
    runtime = get_runtime()
    data = await runtime.auth.request_super_admin_phone_otp(body.phone_number)
    return Envelope(status="ok", data=data)


@router.post("/auth/super-admin/login/phone-otp/verify", response_model=Envelope, tags=["auth"])
async def super_admin_phone_otp_verify(
    body: PhoneOtpVerifyRequest, request: Request, response: Response
):
    runtime = get_runtime()
    bundle = await runtime.auth.verify_super_admin_phone_otp(
        body.phone_number, body.otp, **_client_meta(request)
    )
    return _login_envelope(response, bundle)


# ---------------------------------------------------------------------------
# auth: district admin and password reset
# ---------------------------------------------------------------------------


@router.post("/auth/admin/login/request", response_model=Envelope, tags=["auth"])
async def admin_login_request(body: CredentialsRequest):
    """Email + password for a district admin; on success an OTP is emailed."""
    runtime = get_runtime()
    data = await runtime.auth.request_admin_login_otp(body.email, body.password)
    return Envelope(status="ok", data=data)


@router.post("/auth/admin/login/verify", response_model=Envelope, tags=["auth"])
async def admin_login_verify(body: EmailOtpVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    bundle = await runtime.auth.verify_admin_login_otp(
        body.email, body.otp, **_client_meta(request)
    )
    return _login_envelope(response, bundle)


@router.post("/auth/forgot-password/request", response_model=Envelope, tags=["auth"])
async def forgot_password_request(body: EmailOtpRequest):
    runtime = get_runtime()
    data = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=data)


@router.post("/auth/forgot-password/verify", response_model=Envelope, tags=["auth"])
async def forgot_password_verify(body: PasswordResetConfirm):
    runtime = get_runtime()
    data = await runtime.auth.complete_password_reset(body.email, body.otp, body.new_password)
    return Envelope(status="ok", data=data)


# ---------------------------------------------------------------------------
# auth: complainant
# ---------------------------------------------------------------------------


@router.post("/auth/complainant/phone-otp/request", response_model=Envelope, tags=["auth"])
async def complainant_phone_otp_request(body: PhoneOtpRequest):
    runtime = get_runtime()
    data = await runtime.auth.request_complainant_phone_otp(body.phone_number)
    return Envelope(status="ok", data=data)


@router.post("/auth/complainant/phone-otp/verify", response_model=Envelope, tags=["auth"])
async def complainant_phone_otp_verify(body: PhoneOtpVerifyRequest, response: Response):
    runtime = get_runtime()
    bundle = await runtime.auth.verify_complainant_phone_otp(body.phone_number, body.otp)
    return _login_envelope(response, bundle)


@router.post("/auth/complainant/email-otp/request", response_model=Envelope, tags=["auth"])
async def complainant_email_otp_request(body: EmailOtpRequest):
    runtime = get_runtime()
    data = await runtime.auth.request_complainant_email_otp(body.email)
    return Envelope(status="ok", data=data)


@router.post("/auth/complainant/email-otp/verify", response_model=Envelope, tags=["auth"])
async def complainant_email_otp_verify(body: EmailOtpVerifyRequest, response: Response):
    runtime = get_runtime()
    bundle = await runtime.auth.verify_complainant_email_otp(body.email, body.otp)
    return _login_envelope(response, bundle)


# ---------------------------------------------------------------------------
# auth: session
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_token
    claims, access_token = await runtime.auth.refresh(token)
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        path="/",
    )
    return Envelope(
        status="ok",
        data={"accessToken": access_token, "role": claims.role.value},
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_principal)):
    """End the principal's session everywhere and clear the auth cookies."""
    runtime = get_runtime()
    await runtime.auth.logout(principal)
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=True, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=True, samesite="lax")
    return Envelope(status="ok", data={"message": "You have been logged out successfully."})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data={
            "public_user_id": principal.principal_id,
            "role": principal.role.value,
            "district": principal.district,
        },
    )


# ---------------------------------------------------------------------------
# super admin: districts, admins, api keys
# ---------------------------------------------------------------------------


@router.post("/districts", response_model=Envelope, status_code=201, tags=["districts"])
async def create_district(
    body: DistrictCreateRequest, principal: SuperAdmin = Depends(get_super_admin)
):
    runtime = get_runtime()
    district = runtime.accounts.create_district(body.district_code_alpha, body.district_name)
    return Envelope(status="ok", data=_district_response(district))


@router.get("/districts", response_model=Envelope, tags=["districts"])
async def list_districts(principal: SuperAdmin = Depends(get_super_admin)):
    runtime = get_runtime()
    items = [_district_response(d) for d in runtime.accounts.list_districts()]
    return Envelope(status="ok", data={"items": items})


@router.post("/admins", response_model=Envelope, status_code=201, tags=["admins"])
async def create_admin(body: AdminCreateRequest, principal: SuperAdmin = Depends(get_super_admin)):
    """Create a district admin. One admin per district."""
    runtime = get_runtime()
    admin = runtime.accounts.create_admin(
        name=body.name,
        email=body.email,
        district_code_alpha=body.district_code_alpha,
        password=body.password,
        phone_number=body.phone_number,
        post=body.post,
        created_by=principal.principal_id,
    )
    return Envelope(status="ok", data=_admin_response(admin))


@router.get("/admins", response_model=Envelope, tags=["admins"])
async def list_admins(principal: SuperAdmin = Depends(get_super_admin)):
    runtime = get_runtime()
    items = [_admin_response(a) for a in runtime.accounts.list_admins()]
    return Envelope(status="ok", data={"items": items})


@router.post("/api-keys", response_model=Envelope, status_code=201, tags=["api-keys"])
async def create_api_key(
    body: ApiKeyCreateRequest, principal: SuperAdmin = Depends(get_super_admin)
):
    """Mint an intake API key. The raw key is only returned here."""
    runtime = get_runtime()
    record, raw_key = runtime.accounts.create_api_key(body.name, principal.principal_id)
    return Envelope(status="ok", data=_api_key_response(record, raw_key))


@router.get("/api-keys", response_model=Envelope, tags=["api-keys"])
async def list_api_keys(principal: SuperAdmin = Depends(get_super_admin)):
    runtime = get_runtime()
    items = [_api_key_response(k) for k in runtime.accounts.list_api_keys()]
    return Envelope(status="ok", data={"items": items})


@router.get("/api-keys/{key_id}/reveal", response_model=Envelope, tags=["api-keys"])
async def reveal_api_key(
    key_id: str = Path(..., max_length=64), principal: SuperAdmin = Depends(get_super_admin)
):
    runtime = get_runtime()
    raw_key = runtime.accounts.reveal_api_key(key_id)
    logger.info("api_key_revealed", key_id=key_id, by=principal.principal_id)
    return Envelope(status="ok", data={"id": key_id, "api_key": raw_key})


@router.post("/api-keys/{key_id}/deactivate", response_model=Envelope, tags=["api-keys"])
async def deactivate_api_key(
    key_id: str = Path(..., max_length=64), principal: SuperAdmin = Depends(get_super_admin)
):
    runtime = get_runtime()
    record = runtime.accounts.deactivate_api_key(key_id)
    return Envelope(status="ok", data=_api_key_response(record))


# ---------------------------------------------------------------------------
# complaints: intake and access-link self-service
# ---------------------------------------------------------------------------


@router.post("/{domain}/complaints", response_model=Envelope, status_code=201, tags=["complaints"])
async def submit_complaint(
    body: ComplaintCreateRequest,
    domain: ComplaintDomain = Path(...),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
):
    """Register a complaint from an intake partner holding an API key."""
    runtime = get_runtime()
    runtime.accounts.authenticate_api_key(x_api_key)
    complaint, token = await runtime.complaints.create(domain, body.model_dump(exclude_none=True))
    return Envelope(
        status="ok",
        data=ComplaintCreatedResponse(
            complaint_number=complaint.complaint_number,
            current_status=complaint.current_status.value,
            created_at=complaint.created_at.isoformat(),
            access_link_issued=token is not None,
        ),
    )


@router.get("/{domain}/complaints/{complaint_number}/access", response_model=Envelope, tags=["complaints"])
async def read_complaint_via_link(holder: GrantHolder = Depends(get_grant_holder)):
    runtime = get_runtime()
    data = runtime.complaints.read_via_grant(holder)
    return Envelope(status="ok", data={"complaint": data})


@router.patch("/{domain}/complaints/{complaint_number}/access", response_model=Envelope, tags=["complaints"])
async def update_complaint_via_link(
    complaint_description: Optional[str] = Form(None, max_length=10000),
    complainant_email: Optional[str] = Form(None, max_length=254),
    attachments: Optional[List[UploadFile]] = File(None),
    attachment_notes: Optional[List[str]] = Form(None),
    holder: GrantHolder = Depends(get_grant_holder),
):
    """Complainant self-service edit. Never changes the complaint status."""
    runtime = get_runtime()
    uploads = await _read_uploads(attachments, attachment_notes)
    complaint = await runtime.complaints.update_via_grant(
        holder,
        description=complaint_description,
        email=complainant_email,
        uploads=uploads,
    )
    return Envelope(
        status="ok",
        data={
            "message": "Complaint updated successfully",
            "complaint_number": complaint.complaint_number,
            "current_status": complaint.current_status.value,
            "attachments": [a.to_dict() for a in complaint.attachments],
        },
    )


# ---------------------------------------------------------------------------
# complaints: district admin
# ---------------------------------------------------------------------------


@router.get("/admin/{domain}/complaints", response_model=Envelope, tags=["admin-complaints"])
async def list_district_complaints(
    domain: ComplaintDomain = Path(...),
    status: Optional[str] = Query(None, max_length=16),
    priority: Optional[str] = Query(None, max_length=16),
    search: Optional[str] = Query(None, max_length=128),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    admin: DistrictAdmin = Depends(get_district_admin),
):
    runtime = get_runtime()
    data = runtime.complaints.list_for_admin(
        admin, domain, status=status, priority=priority, search=search, page=page, limit=limit
    )
    return Envelope(status="ok", data=data)


@router.get("/admin/{domain}/complaints/{complaint_number}", response_model=Envelope, tags=["admin-complaints"])
async def get_district_complaint(
    domain: ComplaintDomain = Path(...),
    complaint_number: str = Path(..., max_length=64),
    admin: DistrictAdmin = Depends(get_district_admin),
):
    runtime = get_runtime()
    complaint = runtime.complaints.get_for_admin(admin, domain, complaint_number)
    return Envelope(status="ok", data={"complaint": complaint_detail(complaint)})


@router.patch("/admin/{domain}/complaints/{complaint_number}", response_model=Envelope, tags=["admin-complaints"])
async def update_district_complaint(
    domain: ComplaintDomain = Path(...),
    complaint_number: str = Path(..., max_length=64),
    status: Optional[str] = Form(None, max_length=16),
    resolution_note: Optional[str] = Form(None, max_length=10000),
    final_resolution_note: Optional[str] = Form(None, max_length=10000),
    attachments: Optional[List[UploadFile]] = File(None),
    attachment_notes: Optional[List[str]] = Form(None),
    admin: DistrictAdmin = Depends(get_district_admin),
):
    """Change status, add a timeline note or attach files. Reopen with IN_PROGRESS."""
    runtime = get_runtime()
    uploads = await _read_uploads(attachments, attachment_notes)
    complaint = await runtime.complaints.admin_update(
        admin,
        domain,
        complaint_number,
        status=status,
        resolution_note=resolution_note,
        final_resolution_note=final_resolution_note,
        uploads=uploads,
    )
    return Envelope(status="ok", data={"complaint": complaint_detail(complaint)})


@router.post("/admin/{domain}/complaints/{complaint_number}/close", response_model=Envelope, tags=["admin-complaints"])
async def close_district_complaint(
    body: CloseComplaintRequest,
    domain: ComplaintDomain = Path(...),
    complaint_number: str = Path(..., max_length=64),
    admin: DistrictAdmin = Depends(get_district_admin),
):
    runtime = get_runtime()
    complaint = await runtime.complaints.admin_close(
        admin, domain, complaint_number, body.final_status, body.final_resolution_note
    )
    return Envelope(
        status="ok",
        data=CloseComplaintResponse(
            complaint_number=complaint.complaint_number,
            current_status=complaint.current_status.value,
            complaint_end_at=(
                complaint.complaint_end_at.isoformat() if complaint.complaint_end_at else None
            ),
            resolution_details=complaint.resolution_details.to_dict(),
        ),
    )


# ---------------------------------------------------------------------------
# complaints: logged-in complainant
# ---------------------------------------------------------------------------


@router.get("/complainant/complaints", response_model=Envelope, tags=["complainant"])
async def list_my_complaints(complainant: Complainant = Depends(get_complainant)):
    runtime = get_runtime()
    items = runtime.complaints.list_for_complainant(complainant)
    return Envelope(status="ok", data={"items": items})
