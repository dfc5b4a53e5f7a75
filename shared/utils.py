from datetime import datetime
from typing import Optional, Generic, TypeVar, Any
from fastapi import FastAPI, HTTPException, Request, status, Header
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB: str = "storefront_db"
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"

    # MoMo wallet gateway
    MOMO_PARTNER_CODE: str = "MOMO"
    MOMO_ACCESS_KEY: str = ""
    MOMO_SECRET_KEY: str = ""
    MOMO_PARTNER_NAME: str = "Storefront"
    MOMO_STORE_ID: str = "StorefrontStore"
    MOMO_ENDPOINT: str = "https://test-payment.momo.vn/v2/gateway/api/create"
    MOMO_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_REDIRECT_URL: str = "http://localhost:5173/payment/result"
    PAYMENT_IPN_URL: str = "http://localhost:8003/payment/momo/callback"

    # Order lifecycle
    ORDER_EXPIRY_MINUTES: int = 100
    SWEEP_INTERVAL_SECONDS: int = 3600
    SWEEPER_ENABLED: bool = True
    ORDER_CODE_MAX_ATTEMPTS: int = 5

    NOTIFY_WEBHOOK_URL: Optional[str] = None

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

# --- Authentication ---
ADMIN_ROLES = {"admin", "manager"}

def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None,
        details: Optional[Any] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.details = details

class ValidationException(AppException):
    def __init__(self, detail: str = "Invalid data", details: Optional[Any] = None):
        super().__init__(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail, details=details)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    def __init__(self, detail: str = "Access denied"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class InsufficientStockException(AppException):
    def __init__(self, product_id: str, requested: int, available: Optional[int] = None, name: Optional[str] = None):
        label = name or product_id
        detail = f"Insufficient stock for {label}: requested {requested}"
        if available is not None:
            detail += f", available {available}"
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            details={"product_id": product_id, "requested": requested, "available": available}
        )
        self.product_id = product_id

class InvalidTransitionException(AppException):
    def __init__(self, detail: str, current: Optional[str] = None, requested: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            details={"current": current, "requested": requested}
        )

class ConflictException(AppException):
    def __init__(self, detail: str = "The order was changed by another request, please refresh and retry"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

class SignatureInvalidException(AppException):
    def __init__(self, detail: str = "Invalid signature"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class MissingFieldsException(AppException):
    def __init__(self, fields: list):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing required fields: {', '.join(fields)}",
            details={"fields": fields}
        )

class GatewayUnavailableException(AppException):
    def __init__(self, detail: str = "Payment gateway unavailable, please retry later"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail, headers={"Retry-After": "30"})

class GatewayRejectedException(AppException):
    def __init__(self, detail: str = "Payment gateway rejected the request", result_code: Optional[int] = None):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail, details={"result_code": result_code})
        self.result_code = result_code

class PartialFailureException(AppException):
    def __init__(self, detail: str, failed_items: list):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=detail,
            details={"failed_items": failed_items}
        )
        self.failed_items = failed_items

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    body = ErrorResponse(error=str(exc.detail), details=exc.details)
    return JSONResponse(status_code=exc.status_code, content=body.dict(), headers=exc.headers)

def setup_exception_handlers(app: FastAPI):
    app.add_exception_handler(AppException, app_exception_handler)

# --- Decorators/Dependencies ---
async def require_auth(authorization: str = Header(...)) -> dict:
    scheme, _, param = authorization.partition(" ")
    if not authorization or scheme.lower() != "bearer":
         raise UnauthorizedException(detail="Invalid authentication credentials")
    return verify_token(param)

async def require_admin(authorization: str = Header(...)) -> dict:
    user = await require_auth(authorization)
    if user.get("role") not in ADMIN_ROLES:
        raise ForbiddenException("Only admins can manage orders")
    return user
