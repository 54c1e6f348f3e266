from fastapi import APIRouter, HTTPException, Request, status
from pymongo.errors import DuplicateKeyError
from database import database
from models import User, RegisterRequest, LoginRequest, TokenResponse, SubscriptionStatus
from auth import verify_password, hash_password, create_access_token, normalize_email, validate_password_strength
from middleware import require_auth
from services.entitlements import get_entitlements, get_upgrade_reason
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])

PUBLIC_USER_FIELDS = (
    "user_id", "email", "first_name", "last_name",
    "subscription_plan_id", "subscription_status", "created_at",
)


def public_user(user: dict) -> dict:
    """User document without credentials or Stripe ids."""
    return {k: user.get(k) for k in PUBLIC_USER_FIELDS}


def _token_for(user: dict) -> str:
    return create_access_token({"user_id": user["user_id"], "email": user["email"]})


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest):
    """Create an account on the free plan and sign it in."""
    db = database.get_db()

    email = normalize_email(body.email)
    if not email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid email")

    ok, message = validate_password_strength(body.password)
    if not ok:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    if await db.users.find_one({"email": email}, {"_id": 0, "user_id": 1}):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = User(
        email=email,
        password_hash=hash_password(body.password),
        first_name=(body.first_name or "").strip() or None,
        last_name=(body.last_name or "").strip() or None,
        subscription_status=SubscriptionStatus.FREE,
    )
    doc = user.model_dump(mode="python")
    doc["subscription_status"] = SubscriptionStatus.FREE.value

    try:
        await db.users.insert_one(doc)
    except DuplicateKeyError:
        # Lost a race with a concurrent registration for the same email
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    logger.info(f"User registered: {user.user_id}")
    return TokenResponse(access_token=_token_for(doc), user=public_user(doc))


@router.post("/login", response_model=TokenResponse)
async def login(credentials: LoginRequest):
    db = database.get_db()

    email = normalize_email(credentials.email)
    user = await db.users.find_one({"email": email}, {"_id": 0}) if email else None

    if not user or not user.get("password_hash") or not verify_password(
        credentials.password,
        user["password_hash"]
    ):
        logger.info("USER_LOGIN_FAILED reason=invalid_credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    await db.users.update_one(
        {"user_id": user["user_id"]},
        {"$set": {"last_login_at": datetime.now(timezone.utc)}}
    )

    logger.info(f"USER_LOGIN_SUCCESS user_id={user['user_id']}")
    return TokenResponse(access_token=_token_for(user), user=public_user(user))


@router.get("/me")
async def me(request: Request):
    """Current profile with billing entitlements."""
    token_user = await require_auth(request)
    db = database.get_db()

    user = await db.users.find_one({"user_id": token_user["user_id"]}, {"_id": 0})
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    return {
        "user": public_user(user),
        "entitlements": get_entitlements(user).to_dict(),
        "upgrade_reason": get_upgrade_reason(user),
    }
