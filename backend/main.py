# backend/main.py
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends, Request, Query, Header
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile
from typing import List, Optional
from datetime import datetime
from contextlib import asynccontextmanager
import json
import logging

import config
from auth import create_access_token, get_current_user, require_role, user_from_token
from bookings import (
    apply_status_update, attach_documents, cancel_booking, create_booking, get_booking,
    list_bookings_in_range, list_client_bookings, list_consultant_bookings, reschedule_booking,
)
from cache import cache
from catalog import (
    add_availability, create_service, delete_service, get_consultant, get_service,
    list_consultants, list_services, list_services_grouped, remove_availability,
    update_consultant_profile, update_service,
)
from database import SessionLocal, get_db, init_db
from errors import AppError, ValidationError, register_exception_handlers
from identity import GoogleIdentityVerifier, get_identity_verifier, resolve_or_create_user
from models import User, ROLE_ADMIN, ROLE_CONSULTANT
from notifications import NotificationDispatcher, delete_notification, list_notifications, mark_read, notifier
from payments import (
    get_payment_gateway, handle_payment_event, list_payments, start_payment, verify_webhook_signature,
)
from reviews import create_review, delete_review, list_client_reviews, list_consultant_reviews, update_review
from scheduler import BookingScheduler
from schemas import (
    AdminUserUpdate, AvailabilityRequest, BookingResponse, BookingUpdate, ConsultantProfileUpdate, GoogleLoginRequest,
    HealthResponse, LoginResponse, NotificationResponse, PaymentIntentRequest, PaymentResponse,
    PaymentWebhookEvent, RescheduleRequest, ReviewCreate, ReviewResponse, ReviewUpdate, ServiceCreate,
    ServiceResponse, ServiceUpdate, SlotResponse, UserProfileUpdate, UserResponse,
)
from storage import FileStorage, IncomingFile, get_file_storage
from users import get_user, list_users, update_profile, update_user_by_admin
from websocket_manager import ConnectionManager

# Configure logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Initialize managers
manager = ConnectionManager()
dispatcher = NotificationDispatcher(notifier, SessionLocal, manager)
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Consultant Booking API...")
    init_db()
    global scheduler
    if config.SCHEDULER_ENABLED:
        scheduler = BookingScheduler(dispatcher, notifier)
        scheduler.start()
    yield
    # Shutdown
    logger.info("Shutting down Consultant Booking API...")
    if scheduler:
        await scheduler.shutdown()
        scheduler = None


app = FastAPI(
    title="Consultant Booking API",
    version="1.0.0",
    description="Consultant catalog, booking lifecycle, reviews and notifications",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


def cached_json(request: Request, ttl: int, build):
    """Serve a catalog read from the response cache, filling it on a miss"""
    key = cache.key_for(request.url.path, request.url.query)
    hit = cache.get(key)
    if hit is not None:
        return hit
    data = jsonable_encoder(build())
    cache.set(key, data, ttl)
    return data


# WebSocket endpoint for live notifications
@app.websocket("/ws/{token}")
async def websocket_endpoint(websocket: WebSocket, token: str, db: Session = Depends(get_db)):
    try:
        user_id = user_from_token(db, token).id
    except AppError:
        await websocket.close(code=4401)
        return
    finally:
        # Not needed for the rest of the connection
        db.close()

    await manager.connect(websocket, user_id)
    try:
        await websocket.send_text(json.dumps({
            'type': 'connection',
            'content': 'Connected to notifications',
            'timestamp': datetime.utcnow().isoformat()
        }))
        while True:
            # Clients only keep the socket alive
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text(json.dumps({'type': 'pong'}))
    except WebSocketDisconnect:
        manager.disconnect(user_id, websocket)
    except Exception as e:
        logger.error(f"Error in websocket for user {user_id}: {e}")
        manager.disconnect(user_id, websocket)


# REST endpoints
@app.get("/")
async def root():
    return {"message": "Consultant Booking API", "version": "1.0.0"}


@app.get("/api/health", response_model=HealthResponse)
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database_status = "connected"
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {e}")
        database_status = "unavailable"

    return HealthResponse(
        status="healthy" if database_status == "connected" else "degraded",
        timestamp=datetime.utcnow(),
        database=database_status,
        cache="connected" if cache.ping() else "unavailable",
        scheduler="running" if scheduler and scheduler.is_running else "stopped",
        details={
            "queued_notifications": len(notifier),
            "connected_users": len(manager.active_connections),
            "jobs": scheduler.get_scheduled_jobs() if scheduler else [],
        },
    )


# Auth
@app.post("/api/auth/google/login", response_model=LoginResponse)
async def google_login(
    body: GoogleLoginRequest,
    db: Session = Depends(get_db),
    verifier: GoogleIdentityVerifier = Depends(get_identity_verifier),
):
    identity = await verifier.verify(body.credential)
    user = resolve_or_create_user(db, identity)
    return LoginResponse(token=create_access_token(user), user=UserResponse.model_validate(user))


@app.get("/api/auth/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)):
    return user


# Users
@app.get("/api/users/me", response_model=UserResponse)
async def get_my_profile(user: User = Depends(get_current_user)):
    return user


@app.put("/api/users/me", response_model=UserResponse)
async def update_my_profile(
    body: UserProfileUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return update_profile(db, user, body)


@app.get("/api/admin/users", response_model=List[UserResponse])
async def admin_list_users(
    role: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_ADMIN)),
):
    return list_users(db, role)


@app.get("/api/admin/users/{user_id}", response_model=UserResponse)
async def admin_get_user(user_id: int, db: Session = Depends(get_db), user: User = Depends(require_role(ROLE_ADMIN))):
    return get_user(db, user_id)


@app.put("/api/admin/users/{user_id}", response_model=UserResponse)
async def admin_update_user(
    user_id: int,
    body: AdminUserUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_ADMIN)),
):
    return update_user_by_admin(db, user, user_id, body)


# Consultants
@app.get("/api/consultants")
async def get_consultants(request: Request, specialty: Optional[str] = None, db: Session = Depends(get_db)):
    return cached_json(request, config.CACHE_TTL_CONSULTANTS, lambda: list_consultants(db, specialty))


@app.put("/api/consultants/me")
async def update_my_consultant_profile(
    body: ConsultantProfileUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_CONSULTANT)),
):
    return jsonable_encoder(update_consultant_profile(db, user, body))


@app.post("/api/consultants/me/availability", response_model=List[SlotResponse], status_code=201)
async def publish_availability(
    body: AvailabilityRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_CONSULTANT)),
):
    return add_availability(db, user, body)


@app.delete("/api/consultants/me/availability/{slot_id}")
async def delete_availability(
    slot_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_CONSULTANT)),
):
    remove_availability(db, user, slot_id)
    return {"message": "Slot removed"}


@app.get("/api/consultants/{consultant_id}")
async def get_consultant_detail(request: Request, consultant_id: int, db: Session = Depends(get_db)):
    return cached_json(request, config.CACHE_TTL_CONSULTANTS, lambda: get_consultant(db, consultant_id))


@app.get("/api/consultants/{consultant_id}/reviews", response_model=List[ReviewResponse])
async def get_consultant_reviews(consultant_id: int, db: Session = Depends(get_db)):
    return list_consultant_reviews(db, consultant_id)


# Services
@app.get("/api/services")
async def get_services(
    request: Request,
    category: Optional[str] = None,
    consultant_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    return cached_json(
        request, config.CACHE_TTL_SERVICES,
        lambda: [ServiceResponse.model_validate(s) for s in list_services(db, category, consultant_id)],
    )


@app.get("/api/services/grouped")
async def get_services_grouped(request: Request, db: Session = Depends(get_db)):
    def build():
        return [
            {"category": category, "services": [ServiceResponse.model_validate(s) for s in services]}
            for category, services in list_services_grouped(db).items()
        ]
    return cached_json(request, config.CACHE_TTL_SERVICES, build)


@app.get("/api/services/{service_id}")
async def get_service_detail(request: Request, service_id: int, db: Session = Depends(get_db)):
    return cached_json(
        request, config.CACHE_TTL_SERVICES,
        lambda: ServiceResponse.model_validate(get_service(db, service_id)),
    )


@app.post("/api/services", response_model=ServiceResponse, status_code=201)
async def post_service(
    body: ServiceCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_CONSULTANT)),
):
    return create_service(db, user, body)


@app.put("/api/services/{service_id}", response_model=ServiceResponse)
async def put_service(
    service_id: int,
    body: ServiceUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_CONSULTANT, ROLE_ADMIN)),
):
    return update_service(db, user, service_id, body)


@app.delete("/api/services/{service_id}")
async def remove_service(
    service_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_CONSULTANT, ROLE_ADMIN)),
):
    delete_service(db, user, service_id)
    return {"message": "Service deleted successfully"}


# Bookings
async def _incoming_files(uploads) -> List[IncomingFile]:
    files = []
    for upload in uploads:
        if not isinstance(upload, UploadFile) or not upload.filename:
            continue
        # One byte over the cap is enough to reject
        data = await upload.read(config.MAX_UPLOAD_BYTES + 1)
        files.append(IncomingFile(filename=upload.filename, content_type=upload.content_type, data=data))
    return files


def _field(data, *names):
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


def _required_id(data, *names) -> int:
    value = _field(data, *names)
    if value is None:
        raise ValidationError(f"{names[0]} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {names[0]} format")


@app.post("/api/bookings/book", response_model=BookingResponse, status_code=201)
async def book(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: FileStorage = Depends(get_file_storage),
):
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data") or content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        data = form
        files = await _incoming_files(form.getlist("documents"))
    else:
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("No booking data provided")
        if not isinstance(data, dict):
            raise ValidationError("No booking data provided")
        files = []

    return create_booking(
        db, user,
        consultant_id=_required_id(data, "consultantId", "consultant_id"),
        service_id=_required_id(data, "serviceId", "service_id"),
        date_value=_field(data, "date"),
        time_value=_field(data, "time"),
        duration=_field(data, "duration"),
        notes=_field(data, "notes"),
        files=files,
        storage=storage,
    )


@app.get("/api/bookings", response_model=List[BookingResponse])
async def get_bookings_in_range(
    consultant_id: int = Query(..., alias="consultantId"),
    start_date: str = Query(..., alias="startDate"),
    end_date: str = Query(..., alias="endDate"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return list_bookings_in_range(db, user, consultant_id, start_date, end_date)


@app.get("/api/bookings/client", response_model=List[BookingResponse])
async def get_client_bookings(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return list_client_bookings(db, user, status)


@app.get("/api/bookings/consultant", response_model=List[BookingResponse])
async def get_consultant_bookings(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_role(ROLE_CONSULTANT, ROLE_ADMIN)),
):
    return list_consultant_bookings(db, user, status)


@app.get("/api/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking_detail(booking_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return get_booking(db, user, booking_id)


@app.put("/api/bookings/{booking_id}", response_model=BookingResponse)
async def update_booking(
    booking_id: int,
    body: BookingUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return apply_status_update(db, user, booking_id, body.status, body.payment_status, body.reason)


@app.post("/api/bookings/{booking_id}/reschedule", response_model=BookingResponse)
async def reschedule(
    booking_id: int,
    body: RescheduleRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return reschedule_booking(db, user, booking_id, body.date, body.time)


@app.delete("/api/bookings/{booking_id}", response_model=BookingResponse)
async def cancel(
    booking_id: int,
    reason: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    # Bookings are never physically deleted
    return cancel_booking(db, user, booking_id, reason)


@app.post("/api/bookings/{booking_id}/documents", response_model=BookingResponse, status_code=201)
async def upload_documents(
    booking_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    storage: FileStorage = Depends(get_file_storage),
):
    form = await request.form()
    files = await _incoming_files(form.getlist("documents"))
    return attach_documents(db, user, booking_id, files, storage)


# Reviews
@app.post("/api/reviews", response_model=ReviewResponse, status_code=201)
async def post_review(body: ReviewCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return create_review(db, user, body.booking_id, body.rating, body.comment)


@app.get("/api/reviews/mine", response_model=List[ReviewResponse])
async def my_reviews(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return list_client_reviews(db, user)


@app.put("/api/reviews/{review_id}", response_model=ReviewResponse)
async def put_review(
    review_id: int,
    body: ReviewUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return update_review(db, user, review_id, body.rating, body.comment)


@app.delete("/api/reviews/{review_id}")
async def remove_review(review_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    delete_review(db, user, review_id)
    return {"message": "Review deleted successfully"}


# Payments
@app.post("/api/payments/intent", response_model=PaymentResponse, status_code=201)
async def create_intent(
    body: PaymentIntentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    gateway=Depends(get_payment_gateway),
):
    return await start_payment(db, user, body.booking_id, body.method, gateway)


@app.post("/api/payments/webhook")
async def payment_webhook(
    request: Request,
    x_payment_signature: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    body = await request.body()
    verify_webhook_signature(body, x_payment_signature)
    try:
        event = PaymentWebhookEvent.model_validate_json(body)
    except ValueError:
        raise ValidationError("Malformed webhook payload")
    handle_payment_event(db, event.intent_id, event.status, event.failure_reason)
    return {"received": True}


@app.get("/api/payments", response_model=List[PaymentResponse])
async def payment_history(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return list_payments(db, user)


# Notifications
@app.get("/api/notifications", response_model=List[NotificationResponse])
async def get_notifications(
    unread: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return list_notifications(db, user, unread_only=unread)


@app.patch("/api/notifications/{notification_id}/read", response_model=NotificationResponse)
async def read_notification(notification_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return mark_read(db, user, notification_id)


@app.delete("/api/notifications/{notification_id}")
async def remove_notification(notification_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    delete_notification(db, user, notification_id)
    return {"message": "Notification deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
