from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from core.env import env_str, load_dotenv_if_available, require_env_vars
from core.logging import setup_logging
from services.entitlement_service import TrialExpiredError
from web import routers
from web.deps import trial_expired_handler
from web.middleware.auth_context import auth_context_middleware

load_dotenv_if_available()
setup_logging()

PRODUCTION_REQUIRED_ENV = (
    "DATABASE_URL",
    "AUTH_JWT_SECRET",
    "AUTH_JWT_REFRESH_SECRET",
    "SERVER_SALT",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
)
if (env_str("APP_ENV") or "development").lower() == "production":
    require_env_vars(PRODUCTION_REQUIRED_ENV, context="api")

app = FastAPI(
    title="ZYNX AI API",
    description="Chat API with trial and subscription entitlements.",
    version="0.1.0",
)

origins = [origin.strip() for origin in (env_str("CORS_ORIGINS") or "http://localhost:19006").split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(TrialExpiredError, trial_expired_handler)


@app.middleware("http")
async def attach_auth_context(request: Request, call_next):
    """Decode bearer tokens before routing."""
    return await auth_context_middleware(request, call_next)


@app.get("/", summary="Health Check", tags=["Default"])
def health_check():
    return {"status": "ok", "message": "ZYNX AI API is running."}


app.include_router(routers.health.router)
app.include_router(routers.auth.router, prefix="/api/v1")
app.include_router(routers.chat.router, prefix="/api/v1")
app.include_router(routers.billing.router, prefix="/api/v1")
app.include_router(routers.admin.router, prefix="/api/v1")
