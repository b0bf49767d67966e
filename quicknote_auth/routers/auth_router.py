from fastapi import APIRouter, Depends, Request, Response

from quicknote_auth.schemas.auth import AuthStateResponse, CodeRequest, ExistingSecretRequest
from quicknote_auth.schemas.identity import IdentityProfile
from quicknote_auth.services.auth_orchestrator import AuthOrchestrator
from quicknote_auth.core.exceptions import AuthError, handle_auth_error

router = APIRouter()


def get_orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


def _run(orchestrator: AuthOrchestrator, step, *args) -> AuthStateResponse:
    try:
        step(*args)
    except AuthError as e:
        raise handle_auth_error(e)
    return orchestrator.snapshot()


# Sync endpoints: FastAPI runs them in its threadpool, keeping PBKDF2 off the event loop

@router.post("/signin", response_model=AuthStateResponse)
def sign_in(identity: IdentityProfile, request: Request, orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    # device names in the registry come from the local browser
    orchestrator.device.user_agent = request.headers.get("user-agent")
    return _run(orchestrator, orchestrator.sign_in, identity)


@router.get("/state", response_model=AuthStateResponse)
def get_state(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return orchestrator.snapshot()


@router.get("/provisioning.png")
def get_provisioning_image(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    try:
        image = orchestrator.provisioning_image()
    except AuthError as e:
        raise handle_auth_error(e)
    return Response(content=image, media_type="image/png", headers={"Cache-Control": "no-store"})


@router.post("/setup/regenerate", response_model=AuthStateResponse)
def regenerate_secret(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.regenerate_secret)


@router.post("/setup/confirm", response_model=AuthStateResponse)
def confirm_setup(data: CodeRequest, orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.confirm_setup, data.code)


@router.post("/verify", response_model=AuthStateResponse)
def verify(data: CodeRequest, orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.verify, data.code)


@router.post("/device/confirm", response_model=AuthStateResponse)
def confirm_device(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.confirm_device_registration)


@router.post("/device/cancel", response_model=AuthStateResponse)
def cancel_device(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.cancel_device_registration)


@router.post("/migration/new", response_model=AuthStateResponse)
def migration_new(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.start_new_enrollment)


@router.post("/migration/existing", response_model=AuthStateResponse)
def migration_existing(data: ExistingSecretRequest, orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.use_existing_secret, data.secret)


@router.post("/cancel", response_model=AuthStateResponse)
def cancel(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.cancel)


@router.post("/logout", response_model=AuthStateResponse)
def logout(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return _run(orchestrator, orchestrator.logout)
