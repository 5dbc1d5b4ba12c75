from fastapi import FastAPI, APIRouter, HTTPException, Depends, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
import logging
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import List, Optional, Dict, Any
import uuid
from datetime import datetime, timedelta
import jwt
import bcrypt
import base64

from . import analysis, claims
from .config import (
    MONGO_URL, DB_NAME, JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRATION_HOURS,
    REPORT_RETENTION_DAYS, PROGRESS_INTERVAL_DAYS, CORS_ORIGINS,
)
from .products import STRIPE_PRODUCTS, StripeProduct, get_product_by_id, get_product_by_price_id

# MongoDB connection
client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

app = FastAPI(title="GlowGuide API", version="1.0.0")
api_router = APIRouter(prefix="/api")
security = HTTPBearer()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ('active', 'trialing')
SUBSCRIPTION_PERIOD_DAYS = 30

# ==================== MODELS ====================

class UserCreate(BaseModel):
    email: EmailStr
    password: str
    name: str = ""

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class SubscriptionInfo(BaseModel):
    subscription_status: str = "not_started"
    product_id: Optional[str] = None
    price_id: Optional[str] = None
    current_period_end: Optional[str] = None
    payment_method_brand: Optional[str] = None
    payment_method_last4: Optional[str] = None
    is_active: bool = False
    product_name: Optional[str] = None

class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    subscription: SubscriptionInfo
    created_at: datetime

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse

class PreviewInsight(BaseModel):
    star_rating: int
    emotional_hook: str
    conversion_tease: str
    category: str

class AnalyzePhotoRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data: Optional[str] = Field(None, alias="imageData")

class AnalysisResult(BaseModel):
    temp_analysis_id: str
    perceived_age: Any = None
    preview_insights: List[PreviewInsight]
    expires_at: str

class SaveAnalysisRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temp_analysis_id: Optional[str] = Field(None, alias="tempAnalysisId")

class SaveAnalysisResponse(BaseModel):
    analysis_id: str
    image_url: str

class FullReport(BaseModel):
    analysis_id: str
    image_url: str
    analysis_data: Dict[str, Any]
    created_at: str
    expires_at: str

class CheckoutRequest(BaseModel):
    price_id: str
    success_url: str = "/?payment_success=true"
    cancel_url: str = "/"

# ==================== AUTH HELPERS ====================

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

def create_token(user_id: str) -> str:
    payload = {
        'user_id': user_id,
        'exp': claims.utcnow() + timedelta(hours=JWT_EXPIRATION_HOURS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    try:
        token = credentials.credentials
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = payload.get('user_id')
        user = await db.users.find_one({'id': user_id})
        if not user:
            raise HTTPException(status_code=401, detail="User not found")
        return user
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

# ==================== SUBSCRIPTION HELPERS ====================

def subscription_is_active(subscription: Optional[dict]) -> bool:
    """Active or trialing, and the paid period has not run out"""
    if not subscription:
        return False
    if subscription.get('subscription_status') not in ACTIVE_SUBSCRIPTION_STATUSES:
        return False
    period_end = subscription.get('current_period_end')
    return period_end is None or period_end >= claims.utcnow()

def subscription_info(subscription: Optional[dict]) -> SubscriptionInfo:
    if not subscription:
        return SubscriptionInfo()
    product = get_product_by_id(subscription.get('product_id') or '')
    period_end = subscription.get('current_period_end')
    return SubscriptionInfo(
        subscription_status=subscription.get('subscription_status', 'not_started'),
        product_id=subscription.get('product_id'),
        price_id=subscription.get('price_id'),
        current_period_end=claims.isoformat_utc(period_end) if period_end else None,
        payment_method_brand=subscription.get('payment_method_brand'),
        payment_method_last4=subscription.get('payment_method_last4'),
        is_active=subscription_is_active(subscription),
        product_name=product.name if product else None,
    )

def user_response(user: dict) -> UserResponse:
    return UserResponse(
        id=user['id'],
        email=user['email'],
        name=user.get('name', ''),
        subscription=subscription_info(user.get('subscription')),
        created_at=user['created_at']
    )

async def require_active_subscription(current_user: dict = Depends(get_current_user)):
    if not subscription_is_active(current_user.get('subscription')):
        raise HTTPException(
            status_code=403,
            detail="Active subscription required to access full report"
        )
    return current_user

async def find_claimed_analysis(temp_analysis_id: str, user_id: str) -> Optional[dict]:
    return await db.analyses.find_one({
        'temp_analysis_id': temp_analysis_id,
        'user_id': user_id
    })

# ==================== AUTH ROUTES ====================

@api_router.post("/auth/register", response_model=TokenResponse)
async def register(user_data: UserCreate):
    existing = await db.users.find_one({'email': user_data.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    if len(user_data.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")

    user_id = str(uuid.uuid4())
    user = {
        'id': user_id,
        'email': user_data.email,
        'password': hash_password(user_data.password),
        'name': user_data.name,
        'subscription': None,
        'created_at': claims.utcnow()
    }

    await db.users.insert_one(user)
    logger.info(f"Registered user {user_id}")

    return TokenResponse(access_token=create_token(user_id), user=user_response(user))

@api_router.post("/auth/login", response_model=TokenResponse)
async def login(credentials: UserLogin):
    user = await db.users.find_one({'email': credentials.email})
    if not user or not verify_password(credentials.password, user['password']):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    return TokenResponse(access_token=create_token(user['id']), user=user_response(user))

@api_router.get("/auth/me", response_model=UserResponse)
async def get_me(current_user: dict = Depends(get_current_user)):
    return user_response(current_user)

# ==================== ANALYSIS ROUTES ====================

@api_router.post("/analyze-photo", response_model=AnalysisResult)
async def analyze_photo(request: AnalyzePhotoRequest):
    """
    Anonymous photo analysis. The full result is parked server-side as a
    claim ticket; the caller only gets the free preview plus the ticket id
    and its expiry.
    """
    if not request.image_data:
        raise HTTPException(status_code=400, detail="Image data is required")

    try:
        analysis_data = await run_in_threadpool(analysis.analyze_photo, request.image_data)
    except analysis.InvalidImageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except analysis.ImageTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except analysis.AnalysisConfigError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except analysis.VisionAPIError as e:
        if e.auth_failed:
            raise HTTPException(status_code=401, detail=str(e))
        raise HTTPException(status_code=502, detail=f"Failed to analyze image with Google Vision API: {str(e)}")
    except analysis.LLMServiceError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except analysis.AnalysisParseError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        logger.error(f"Photo analysis error: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")

    ticket = await claims.issue_ticket(db, analysis_data, request.image_data, now=claims.utcnow())

    return AnalysisResult(
        temp_analysis_id=ticket['id'],
        perceived_age=analysis_data.get('perceived_age'),
        preview_insights=analysis_data.get('preview_insights', []),
        expires_at=claims.isoformat_utc(ticket['expires_at'])
    )

@api_router.post("/save-analysis-post-payment", response_model=SaveAnalysisResponse)
async def save_analysis_post_payment(request: SaveAnalysisRequest, current_user: dict = Depends(get_current_user)):
    """Promote a temp analysis into the signed-in user's persisted analyses"""
    if not request.temp_analysis_id:
        raise HTTPException(status_code=400, detail="Missing required data")

    # A retry after a dropped response must not lose the analysis
    existing = await find_claimed_analysis(request.temp_analysis_id, current_user['id'])
    if existing:
        return SaveAnalysisResponse(analysis_id=existing['id'], image_url=existing['image_url'])

    try:
        ticket = await claims.claim_ticket(db, request.temp_analysis_id, now=claims.utcnow())
    except claims.TicketNotFoundError as e:
        # A concurrent retry from the same user may have claimed it meanwhile
        existing = await find_claimed_analysis(request.temp_analysis_id, current_user['id'])
        if existing:
            return SaveAnalysisResponse(analysis_id=existing['id'], image_url=existing['image_url'])
        raise HTTPException(status_code=404, detail=str(e))
    except claims.TicketExpiredError as e:
        raise HTTPException(status_code=410, detail=str(e))

    content_type, image_base64 = analysis.split_data_url(ticket['image_data'])
    analysis_id = str(uuid.uuid4())
    now = claims.utcnow()
    record = {
        'id': analysis_id,
        'user_id': current_user['id'],
        'temp_analysis_id': ticket['id'],
        'image_base64': image_base64,
        'image_content_type': content_type,
        'image_url': f"/api/analyses/{analysis_id}/image",
        'analysis_data': ticket['analysis_data'],
        'created_at': now,
        'expires_at': now + timedelta(days=REPORT_RETENTION_DAYS)
    }

    try:
        await db.analyses.insert_one(record)
    except PyMongoError as e:
        logger.error(f"Database error saving analysis {ticket['id']}: {str(e)}")
        # Put the ticket back so the client can retry before it expires
        try:
            await db.temp_analyses.insert_one(ticket)
        except PyMongoError as restore_error:
            logger.error(f"Could not restore temp analysis {ticket['id']}: {str(restore_error)}")
        raise HTTPException(status_code=500, detail="Failed to save analysis")

    logger.info(f"User {current_user['id']} claimed {ticket['id']} as analysis {analysis_id}")

    return SaveAnalysisResponse(analysis_id=analysis_id, image_url=record['image_url'])

@api_router.get("/get-full-report/{analysis_id}", response_model=FullReport)
async def get_full_report(analysis_id: str, current_user: dict = Depends(require_active_subscription)):
    record = await db.analyses.find_one({
        'id': analysis_id,
        'user_id': current_user['id']
    })

    if not record:
        raise HTTPException(status_code=404, detail="Analysis not found")

    if claims.utcnow() > record['expires_at']:
        raise HTTPException(status_code=410, detail="Analysis has expired")

    return FullReport(
        analysis_id=record['id'],
        image_url=record['image_url'],
        analysis_data=record['analysis_data'],
        created_at=claims.isoformat_utc(record['created_at']),
        expires_at=claims.isoformat_utc(record['expires_at'])
    )

@api_router.get("/analyses/{analysis_id}/image")
async def get_analysis_image(analysis_id: str, current_user: dict = Depends(get_current_user)):
    record = await db.analyses.find_one({
        'id': analysis_id,
        'user_id': current_user['id']
    })

    if not record:
        raise HTTPException(status_code=404, detail="Analysis not found")

    return Response(
        content=base64.b64decode(record['image_base64']),
        media_type=record.get('image_content_type', 'image/jpeg')
    )

@api_router.delete("/analyses/{analysis_id}")
async def delete_analysis(analysis_id: str, current_user: dict = Depends(get_current_user)):
    result = await db.analyses.delete_one({
        'id': analysis_id,
        'user_id': current_user['id']
    })

    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Analysis not found")

    return {"message": "Analysis deleted successfully"}

# ==================== PROGRESS TRACKING ====================

@api_router.get("/progress")
async def get_progress(current_user: dict = Depends(require_active_subscription)):
    """Monthly check-ins: the user's analyses, newest first"""
    records = await db.analyses.find(
        {'user_id': current_user['id']}
    ).sort('created_at', -1).to_list(100)

    entries = [
        {
            'analysis_id': r['id'],
            'image_url': r['image_url'],
            'perceived_age': r.get('analysis_data', {}).get('perceived_age'),
            'created_at': claims.isoformat_utc(r['created_at'])
        }
        for r in records
    ]

    perceived_age_change = None
    if len(records) >= 2:
        latest = records[0].get('analysis_data', {}).get('perceived_age')
        previous = records[1].get('analysis_data', {}).get('perceived_age')
        if isinstance(latest, (int, float)) and isinstance(previous, (int, float)):
            perceived_age_change = latest - previous

    next_check_in = None
    check_in_due = True
    if records:
        next_check_in_at = records[0]['created_at'] + timedelta(days=PROGRESS_INTERVAL_DAYS)
        next_check_in = claims.isoformat_utc(next_check_in_at)
        check_in_due = claims.utcnow() >= next_check_in_at

    return {
        'analyses': entries,
        'total': len(entries),
        'perceived_age_change': perceived_age_change,
        'next_check_in': next_check_in,
        'check_in_due': check_in_due
    }

# ==================== SUBSCRIPTION ENDPOINTS ====================

@api_router.get("/subscription/products", response_model=List[StripeProduct])
async def get_products():
    return STRIPE_PRODUCTS

@api_router.get("/subscription/status", response_model=SubscriptionInfo)
async def get_subscription_status(current_user: dict = Depends(get_current_user)):
    return subscription_info(current_user.get('subscription'))

@api_router.post("/subscription/checkout")
async def create_checkout(request: CheckoutRequest, current_user: dict = Depends(get_current_user)):
    """
    Checkout (MOCK - for testing)
    Activates the subscription immediately and sends the caller straight to
    the success URL. A real deployment hands this to Stripe Checkout.
    """
    product = get_product_by_price_id(request.price_id)
    if not product:
        raise HTTPException(status_code=400, detail="Unknown price")

    subscription = {
        'subscription_status': 'active',
        'product_id': product.id,
        'price_id': product.price_id,
        'current_period_end': claims.utcnow() + timedelta(days=SUBSCRIPTION_PERIOD_DAYS),
        'payment_method_brand': 'visa',
        'payment_method_last4': '4242'
    }
    await db.users.update_one(
        {'id': current_user['id']},
        {'$set': {'subscription': subscription}}
    )

    logger.info(f"User {current_user['id']} subscribed to {product.id} (MOCK)")

    return {
        'session_id': f"cs_mock_{uuid.uuid4().hex}",
        'url': request.success_url
    }

@api_router.post("/subscription/cancel", response_model=SubscriptionInfo)
async def cancel_subscription(current_user: dict = Depends(get_current_user)):
    subscription = current_user.get('subscription')
    if not subscription:
        raise HTTPException(status_code=400, detail="No subscription to cancel")

    subscription['subscription_status'] = 'canceled'
    await db.users.update_one(
        {'id': current_user['id']},
        {'$set': {'subscription.subscription_status': 'canceled'}}
    )

    logger.info(f"User {current_user['id']} canceled subscription")

    return subscription_info(subscription)

# ==================== HEALTH CHECK ====================

@api_router.get("/")
async def root():
    return {"message": "GlowGuide API", "version": "1.0.0"}

@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}

# Include router
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def create_indexes():
    try:
        await claims.ensure_indexes(db)
    except PyMongoError as e:
        logger.error(f"Could not create indexes: {str(e)}")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
