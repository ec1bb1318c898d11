from fastapi import FastAPI, APIRouter, HTTPException, Depends, Request, Response
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from pydantic import BaseModel, Field, ConfigDict, ValidationError
from typing import List, Optional, Any, Dict, Set, Tuple
import uuid
from datetime import datetime, timezone, timedelta, date
from urllib.parse import quote
from zoneinfo import ZoneInfo
import httpx
import json
import re
from openai import AsyncOpenAI
from passlib.context import CryptContext
from jose import JWTError, jwt

from geo import InvalidCoordinate, Position, GeofenceState, validate_coordinate
from medication_schedule import (
    DEFAULT_DUE_GRACE_MINUTES,
    DEFAULT_LEAD_MINUTES,
    REMINDER_KIND_ADVANCE,
    PendingReminder,
    ReminderLedger,
    classify_schedules,
    normalize_times,
    parse_hhmm,
)
from ai_commands import (
    AddMedicineCommand,
    SendMessageCommand,
    UnrecognizedCommand,
    VisualizeCommand,
    parse_assistant_reply,
)
from monitor import (
    GeofenceMonitor,
    ReminderMonitor,
    build_scheduler,
    dispatch_pending,
    run_side_effect,
)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Auth Configuration
SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "fallback_secret_key_change_in_production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 30  # 30 days

# Password hashing configuration
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Evaluator tuning
REMINDER_LEAD_MINUTES = int(os.environ.get("REMINDER_LEAD_MINUTES", str(DEFAULT_LEAD_MINUTES)))
REMINDER_DUE_GRACE_MINUTES = int(os.environ.get("REMINDER_DUE_GRACE_MINUTES", str(DEFAULT_DUE_GRACE_MINUTES)))
REMINDER_POLL_SECONDS = float(os.environ.get("REMINDER_POLL_SECONDS", "60"))
GEOFENCE_HYSTERESIS_METERS = float(os.environ.get("GEOFENCE_HYSTERESIS_METERS", "0"))
LOCATION_SNAPSHOT_TIMES = [
    t.strip() for t in os.environ.get("LOCATION_SNAPSHOT_TIMES", "12:00,00:00").split(",") if t.strip()
]
SIMULATED_LATITUDE = float(os.environ.get("SIMULATED_LATITUDE", "12.9716"))
SIMULATED_LONGITUDE = float(os.environ.get("SIMULATED_LONGITUDE", "77.5946"))
APP_TIMEZONE = os.environ.get("APP_TIMEZONE", "UTC")
ENABLE_BACKGROUND_MONITORS = os.environ.get("ENABLE_BACKGROUND_MONITORS", "true").strip().lower() in {"1", "true", "yes"}

GEOFENCE_MIN_RADIUS_M = 100
GEOFENCE_MAX_RADIUS_M = 5000

# LLM configuration (both providers expose OpenAI-compatible endpoints)
GROQ_BASE_URL = os.environ.get("GROQ_BASE_URL", "https://api.groq.com/openai/v1")
GROQ_CHAT_MODEL = os.environ.get("GROQ_CHAT_MODEL", "llama-3.3-70b-versatile")
GEMINI_BASE_URL = os.environ.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/openai/")
GEMINI_ANALYZE_MODEL = os.environ.get("GEMINI_ANALYZE_MODEL", "gemini-1.5-flash")
IMAGE_GENERATION_URL = os.environ.get("IMAGE_GENERATION_URL", "https://image.pollinations.ai/prompt/")

# Initialize LLM clients (lazy initialization)
chat_client = None
analysis_client = None

def get_chat_client():
    global chat_client
    if chat_client is None:
        chat_client = AsyncOpenAI(api_key=os.environ.get('GROQ_API_KEY', ''), base_url=GROQ_BASE_URL)
    return chat_client

def get_analysis_client():
    global analysis_client
    if analysis_client is None:
        analysis_client = AsyncOpenAI(api_key=os.environ.get('GEMINI_API_KEY', ''), base_url=GEMINI_BASE_URL)
    return analysis_client

# MongoDB connection
mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]

# Create the main app without a prefix
app = FastAPI()

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Per-subject evaluator state, owned by the monitors and handed to helpers explicitly.
geofence_monitor = GeofenceMonitor(states={}, hysteresis_meters=GEOFENCE_HYSTERESIS_METERS)
reminder_monitor = ReminderMonitor(
    ledgers={},
    lead_minutes=REMINDER_LEAD_MINUTES,
    grace_minutes=REMINDER_DUE_GRACE_MINUTES
)

USER_ROLES = {"patient", "caretaker"}
CHAT_MESSAGE_TYPES = {"text", "image", "audio"}

BASE_SYSTEM_PROMPT = (
    "You are CareConnect AI, a compassionate health assistant. "
    "Be warm, concise, and helpful. In emergencies, advise calling local emergency services.\n\n"
    "CAPABILITY: You can send messages to the people connected to this user if requested.\n"
    "INSTRUCTION: To send a message, output a command in this EXACT format at the end of your response:\n"
    "<<<SEND_MESSAGE={\"recipientId\": \"ID\", \"message\": \"CONTENT\"}>>>\n"
    "CAPABILITY: You can add a medicine to the patient's schedule if asked.\n"
    "INSTRUCTION: To add a medicine, output:\n"
    "<<<ADD_MEDICINE={\"name\": \"NAME\", \"dosage\": \"DOSAGE\", \"times\": [\"HH:MM\"], \"instructions\": \"TEXT\"}>>>\n"
    "Times must be 24-hour HH:MM. Never invent recipient IDs."
)

HEALTH_ADVISOR_PROMPT = (
    "You are CareConnect Health Advisor. Give general wellness, diet and lifestyle guidance in "
    "plain language. You are not a doctor: recommend professional care for diagnosis and always "
    "advise calling local emergency services in an emergency.\n"
    "CAPABILITY: You can illustrate an exercise, meal or technique with an image.\n"
    "INSTRUCTION: To add an image, output <<<VISUALIZE=short visual description>>> on its own line."
)

# ==================== HELPERS ====================

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password):
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def local_now() -> datetime:
    """Wall-clock time used for schedule classification."""
    try:
        return datetime.now(ZoneInfo(APP_TIMEZONE))
    except Exception:
        logger.warning(f"Unknown APP_TIMEZONE {APP_TIMEZONE!r}, falling back to UTC")
        return datetime.now(timezone.utc)

def parse_yyyy_mm_dd(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except Exception:
        return None

def chat_id_for(user_a: str, user_b: str) -> str:
    return "_".join(sorted([user_a, user_b]))

def build_image_url(prompt: str) -> str:
    return f"{IMAGE_GENERATION_URL}{quote(prompt)}?width=800&height=600&nologo=true"

def strip_code_fences(text: str) -> str:
    return re.sub(r"```(?:json)?", "", text or "").strip()

def normalize_history(history: List[dict], limit: int = 20) -> List[dict]:
    """Convert client chat history into chat-completion messages."""
    messages = []
    for item in (history or [])[-limit:]:
        if not isinstance(item, dict):
            continue
        parts = item.get("parts")
        if isinstance(parts, str):
            content = parts
        elif isinstance(parts, list) and parts and isinstance(parts[0], dict):
            content = str(parts[0].get("text") or "")
        else:
            content = str(item.get("text") or item.get("content") or "")
        if not content:
            continue
        role = "assistant" if item.get("role") in {"model", "assistant"} else "user"
        messages.append({"role": role, "content": content})
    return messages

# ==================== MODELS ====================

class User(BaseModel):
    model_config = ConfigDict(extra="ignore")
    user_id: str
    email: str
    name: str
    role: str = "patient"  # patient, caretaker
    hashed_password: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class UserCreate(BaseModel):
    email: str
    password: str
    name: str
    role: str = "patient"

class UserLogin(BaseModel):
    email: str
    password: str

class CareRequestCreate(BaseModel):
    patient_email: str

class CareRequestDecision(BaseModel):
    status: str  # accepted, rejected

class GeofenceUpdate(BaseModel):
    center_latitude: Optional[float] = None
    center_longitude: Optional[float] = None
    radius_meters: float = Field(default=500, ge=GEOFENCE_MIN_RADIUS_M, le=GEOFENCE_MAX_RADIUS_M)
    active: bool = True

class LocationPing(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    simulated: bool = False
    image: Optional[str] = None  # map snapshot attached to any breach alert

class Medicine(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: f"med_{uuid.uuid4().hex[:12]}")
    patient_id: str
    patient_name: str
    caretaker_id: Optional[str] = None
    name: str
    dosage: str
    times: List[str] = []
    instructions: str = ""
    active: bool = True
    source: str = "manual"  # manual, ai_command
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class MedicineCreate(BaseModel):
    name: str
    dosage: str
    times: List[str] = []
    instructions: str = ""

class MedicineUpdate(BaseModel):
    name: Optional[str] = None
    dosage: Optional[str] = None
    times: Optional[List[str]] = None
    instructions: Optional[str] = None
    active: Optional[bool] = None

class DoseTakenRequest(BaseModel):
    time: str
    on_date: Optional[str] = None

class ChatMessageCreate(BaseModel):
    type: str = "text"  # text, image, audio
    text: Optional[str] = None
    media: Optional[str] = None

class AIChatRequest(BaseModel):
    message: str
    history: List[dict] = []
    target_patient_id: Optional[str] = None

class HealthAdvisorRequest(BaseModel):
    message: str
    session_id: Optional[str] = None

class ActivityAnalysisRequest(BaseModel):
    activity_data: Any

class ActivityRisk(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    risk_level: str = Field(alias="riskLevel", pattern="^(high|medium|low)$")
    alert: Optional[str] = None

# ==================== AUTHENTICATION ====================

async def get_current_user(request: Request) -> User:
    """Get current user from JWT token in cookie or Authorization header"""
    token = request.cookies.get("access_token")

    # Fallback to Authorization header
    if not token:
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ")[1]

    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        email: str = payload.get("sub")
        if email is None:
            raise HTTPException(status_code=401, detail="Invalid authentication token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    user_doc = await db.users.find_one({"email": email}, {"_id": 0})
    if not user_doc:
        raise HTTPException(status_code=401, detail="User not found")
    return User(**user_doc)

def require_role(current_user: User, role: str):
    if current_user.role != role:
        raise HTTPException(status_code=403, detail=f"Only a {role} can do this")

async def get_accepted_link(caretaker_id: str, patient_id: str) -> Optional[dict]:
    return await db.care_links.find_one(
        {"caretaker_id": caretaker_id, "patient_id": patient_id, "status": "accepted"},
        {"_id": 0}
    )

async def resolve_patient_id(current_user: User, patient_id: Optional[str] = None) -> str:
    """Resolve the patient a request acts on, checking caretaker links."""
    if current_user.role == "patient":
        if patient_id and patient_id != current_user.user_id:
            raise HTTPException(status_code=403, detail="Access denied for this patient")
        return current_user.user_id

    if not patient_id:
        raise HTTPException(status_code=400, detail="patient_id is required")
    link = await get_accepted_link(current_user.user_id, patient_id)
    if not link:
        raise HTTPException(status_code=403, detail="Access denied for this patient")
    return patient_id

async def linked_patient_ids(caretaker_id: str) -> List[str]:
    links = await db.care_links.find(
        {"caretaker_id": caretaker_id, "status": "accepted"},
        {"_id": 0, "patient_id": 1}
    ).to_list(500)
    return [l["patient_id"] for l in links if l.get("patient_id")]

async def linked_caretakers(patient_id: str) -> List[dict]:
    links = await db.care_links.find(
        {"patient_id": patient_id, "status": "accepted"},
        {"_id": 0, "caretaker_id": 1, "caretaker_name": 1}
    ).to_list(200)
    return [{"id": l["caretaker_id"], "name": l.get("caretaker_name") or "Caretaker"} for l in links]

async def users_are_linked(user_a: str, user_b: str) -> bool:
    link = await db.care_links.find_one(
        {
            "status": "accepted",
            "$or": [
                {"caretaker_id": user_a, "patient_id": user_b},
                {"caretaker_id": user_b, "patient_id": user_a}
            ]
        },
        {"_id": 0, "id": 1}
    )
    return link is not None

# ==================== NOTIFICATIONS ====================

async def get_alert_recipients(patient_user_id: str) -> List[dict]:
    """Collect patient + accepted caretaker recipients for notifications."""
    recipients = []
    patient = await db.users.find_one(
        {"user_id": patient_user_id},
        {"_id": 0, "user_id": 1, "name": 1, "email": 1, "role": 1}
    )
    if patient:
        recipients.append(patient)

    caretaker_ids = [c["id"] for c in await linked_caretakers(patient_user_id)]
    if caretaker_ids:
        caretakers = await db.users.find(
            {"user_id": {"$in": caretaker_ids}},
            {"_id": 0, "user_id": 1, "name": 1, "email": 1, "role": 1}
        ).to_list(200)
        recipients.extend(caretakers)

    return recipients

async def dispatch_proactive_hooks(
    patient_user_id: str,
    event_type: str,
    severity: str,
    payload: dict
) -> List[dict]:
    """
    Dispatch alert payload to configured push/email/SMS webhooks.
    Hook URLs:
      ALERT_PUSH_WEBHOOK_URL
      ALERT_EMAIL_WEBHOOK_URL
      ALERT_SMS_WEBHOOK_URL
    """
    recipients = await get_alert_recipients(patient_user_id)
    channels = [
        ("push", os.environ.get("ALERT_PUSH_WEBHOOK_URL", "").strip()),
        ("email", os.environ.get("ALERT_EMAIL_WEBHOOK_URL", "").strip()),
        ("sms", os.environ.get("ALERT_SMS_WEBHOOK_URL", "").strip()),
    ]

    envelope = {
        "event_type": event_type,
        "severity": severity,
        "patient_user_id": patient_user_id,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "recipients": recipients,
        "payload": payload
    }

    results = []
    for channel, url in channels:
        if not url:
            results.append({"channel": channel, "sent": False, "reason": "hook_not_configured"})
            continue
        try:
            async with httpx.AsyncClient(timeout=8.0) as http_client:
                response = await http_client.post(url, json={**envelope, "channel": channel})
            ok = 200 <= response.status_code < 300
            result = {
                "channel": channel,
                "sent": ok,
                "status_code": response.status_code
            }
            if not ok:
                result["reason"] = (response.text or "non_2xx")[:240]
                logger.warning(f"{channel} hook for {event_type} returned {response.status_code}")
            results.append(result)
        except Exception as exc:
            logger.warning(f"{channel} hook for {event_type} failed: {exc}")
            results.append({"channel": channel, "sent": False, "reason": str(exc)[:240]})

    log_doc = {
        "id": f"notify_{uuid.uuid4().hex[:12]}",
        "patient_user_id": patient_user_id,
        "event_type": event_type,
        "severity": severity,
        "payload": payload,
        "recipients": recipients,
        "results": results,
        "created_at": datetime.now(timezone.utc).isoformat()
    }
    await db.alert_notification_logs.insert_one(log_doc)
    return results

# ==================== GEOFENCE ====================

async def record_geofence_breach(link: dict, patient: User, breach, image: Optional[str]) -> dict:
    alert_doc = {
        "id": f"alert_{uuid.uuid4().hex[:12]}",
        "caretaker_id": link["caretaker_id"],
        "patient_id": patient.user_id,
        "patient_name": patient.name,
        "link_id": link["id"],
        "type": "GEOFENCE_BREACH",
        "message": f"Patient exited Safe Zone! Distance: {round(breach.distance_meters)}m",
        "distance_meters": breach.distance_meters,
        "radius_meters": breach.radius_meters,
        "coordinates": breach.position,
        "zone_center": breach.zone_center,
        "image": image,
        "read": False,
        "timestamp": breach.timestamp.isoformat()
    }
    await db.alerts.insert_one(alert_doc)
    alert_doc.pop("_id", None)
    logger.info(f"Geofence breach alert {alert_doc['id']} sent to caretaker {link['caretaker_id']}")
    await run_side_effect(
        dispatch_proactive_hooks(
            patient_user_id=patient.user_id,
            event_type="geofence_breach",
            severity="high",
            payload={
                "alert_id": alert_doc["id"],
                "distance_meters": breach.distance_meters,
                "location": breach.position,
                "zone_center": breach.zone_center
            }
        ),
        "Geofence breach webhook dispatch"
    )
    return alert_doc

async def evaluate_patient_geofences(
    monitor: GeofenceMonitor,
    patient: User,
    position: Position,
    image: Optional[str] = None
) -> dict:
    """Run the geofence evaluator for every accepted link of ``patient``."""
    links = await db.care_links.find(
        {"patient_id": patient.user_id, "status": "accepted"},
        {"_id": 0}
    ).to_list(200)

    evaluated = []
    new_alerts = []
    for link in links:
        link_id = link["id"]
        # Seed from the last persisted edge so a restart does not re-alert.
        if link_id not in monitor.states and link.get("geofence_is_outside"):
            monitor.states[link_id] = GeofenceState(relation_id=link_id, is_outside=True)
        was_outside = monitor.state_for(link_id).is_outside

        result = monitor.evaluate(link_id, position, link.get("geofence"))
        evaluated.append({
            "link_id": link_id,
            "caretaker_id": link.get("caretaker_id"),
            "outcome": result.outcome,
            "is_outside": result.state.is_outside,
            "breached": result.breached,
            "distance_meters": round(result.distance_meters, 1) if result.distance_meters is not None else None
        })

        if result.state.is_outside != was_outside:
            await run_side_effect(
                db.care_links.update_one(
                    {"id": link_id},
                    {"$set": {"geofence_is_outside": result.state.is_outside}}
                ),
                "Geofence state persistence"
            )
        if result.breached and result.breach:
            alert_doc = await run_side_effect(
                record_geofence_breach(link, patient, result.breach, image),
                "Geofence breach alert"
            )
            if alert_doc:
                new_alerts.append(alert_doc)

    return {"evaluated": evaluated, "new_alerts": new_alerts}

# ==================== MEDICINE SCHEDULES ====================

async def load_acknowledgements(patient_ids: List[str], on_date: date) -> Dict[str, Set[str]]:
    """Map medicine id -> HH:MM slots acknowledged as taken on ``on_date``."""
    acks = await db.dose_acknowledgements.find(
        {"patient_id": {"$in": patient_ids}, "on_date": on_date.isoformat()},
        {"_id": 0, "medicine_id": 1, "time": 1}
    ).to_list(5000)
    taken: Dict[str, Set[str]] = {}
    for ack in acks:
        taken.setdefault(ack["medicine_id"], set()).add(ack["time"])
    return taken

async def classify_for_patients(patient_ids: List[str], now: datetime):
    medicines = await db.medicines.find(
        {"patient_id": {"$in": patient_ids}, "active": True},
        {"_id": 0}
    ).to_list(2000)
    acknowledgements = await load_acknowledgements(patient_ids, now.date())
    classification = classify_schedules(
        medicines,
        now,
        acknowledgements,
        lead_minutes=REMINDER_LEAD_MINUTES
    )
    return medicines, acknowledgements, classification

def serialize_classification(classification) -> dict:
    return {
        "on_date": classification.on_date.isoformat(),
        "slots": [s.model_dump() for s in classification.slots],
        "warnings": [w.model_dump() for w in classification.warnings]
    }

def serialize_reminder(reminder: PendingReminder) -> dict:
    doc = reminder.model_dump()
    doc["on_date"] = reminder.on_date.isoformat()
    return doc

async def claim_reminder(user_id: str, reminder: PendingReminder) -> bool:
    """Record that ``user_id`` was shown ``reminder``; False if already shown."""
    reminder_id = f"{user_id}:{reminder.schedule_id}:{reminder.on_date.isoformat()}:{reminder.time}:{reminder.kind}"
    result = await db.reminder_notifications.update_one(
        {"id": reminder_id},
        {
            "$setOnInsert": {
                "id": reminder_id,
                "user_id": user_id,
                **serialize_reminder(reminder),
                "surfaced_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return result.upserted_id is not None

async def notify_medicine_reminder(patient_id: str, reminder: PendingReminder):
    lead_text = f"In {REMINDER_LEAD_MINUTES} minutes" if reminder.kind == REMINDER_KIND_ADVANCE else "Now"
    return await dispatch_proactive_hooks(
        patient_user_id=patient_id,
        event_type="medicine_reminder",
        severity="medium",
        payload={
            **serialize_reminder(reminder),
            "message": f"{lead_text} ({reminder.time}): {reminder.name} - {reminder.dosage}"
        }
    )

# ==================== BACKGROUND MONITORS ====================

async def run_reminder_tick(monitor: ReminderMonitor = reminder_monitor):
    now = local_now()
    medicines = await db.medicines.find({"active": True}, {"_id": 0}).to_list(10000)
    by_patient: Dict[str, List[dict]] = {}
    for med in medicines:
        by_patient.setdefault(med.get("patient_id"), []).append(med)

    for patient_id, schedules in by_patient.items():
        if not patient_id:
            continue
        acknowledgements = await load_acknowledgements([patient_id], now.date())
        _, pending = monitor.check(patient_id, schedules, acknowledgements, now)
        # The stored claim keeps webhooks once-only across restarts and workers.
        await dispatch_pending(
            pending,
            claim=lambda reminder: claim_reminder("webhook", reminder),
            notify=lambda reminder, pid=patient_id: notify_medicine_reminder(pid, reminder)
        )

async def run_snapshot_tick(slot: str):
    """Record every tracked patient's last position for the daily slot."""
    now = local_now()
    tracked = await db.tracking.find({}, {"_id": 0}).to_list(10000)
    for doc in tracked:
        snapshot_id = f"{doc['user_id']}_{now.date().isoformat()}_{slot}"
        await run_side_effect(
            db.location_snapshots.update_one(
                {"id": snapshot_id},
                {
                    "$setOnInsert": {
                        "id": snapshot_id,
                        "user_id": doc["user_id"],
                        "on_date": now.date().isoformat(),
                        "time": slot,
                        "location": doc.get("location"),
                        "is_simulated": doc.get("is_simulated", False),
                        "recorded_at": datetime.now(timezone.utc).isoformat()
                    }
                },
                upsert=True
            ),
            "Location snapshot"
        )
    logger.info(f"Recorded {slot} location snapshots for {len(tracked)} patients")

scheduler = build_scheduler(
    APP_TIMEZONE,
    run_reminder_tick,
    REMINDER_POLL_SECONDS,
    run_snapshot_tick,
    LOCATION_SNAPSHOT_TIMES
)

# ==================== AUTH ROUTES ====================

@api_router.post("/auth/register")
async def register(user_data: UserCreate):
    """Register a new user"""
    email = user_data.email.strip().lower()
    existing_user = await db.users.find_one({"email": email})
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    role = (user_data.role or "patient").strip().lower()
    if role not in USER_ROLES:
        raise HTTPException(status_code=400, detail="Role must be 'patient' or 'caretaker'")

    user = User(
        user_id=f"user_{uuid.uuid4().hex[:12]}",
        email=email,
        name=user_data.name,
        role=role,
        hashed_password=get_password_hash(user_data.password)
    )
    doc = user.model_dump()
    doc["created_at"] = doc["created_at"].isoformat()
    await db.users.insert_one(doc)
    logger.info(f"Registered {role} {user.user_id}")
    return {"message": "User registered successfully", "user_id": user.user_id, "role": role}

@api_router.post("/auth/login")
async def login(response: Response, form_data: UserLogin):
    user_doc = await db.users.find_one({"email": form_data.email.strip().lower()}, {"_id": 0})
    if not user_doc or not verify_password(form_data.password, user_doc.get("hashed_password") or ""):
        raise HTTPException(status_code=401, detail="Incorrect email or password")

    access_token = create_access_token(
        data={"sub": user_doc["email"]},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    response.set_cookie(
        key="access_token",
        value=access_token,
        httponly=True,
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        samesite="lax"
    )
    user_doc.pop("hashed_password", None)
    return {"access_token": access_token, "token_type": "bearer", "user": user_doc}

@api_router.get("/auth/me")
async def get_me(current_user: User = Depends(get_current_user)):
    return current_user.model_dump(exclude={"hashed_password"})

@api_router.post("/auth/logout")
async def logout(response: Response):
    response.delete_cookie("access_token")
    return {"message": "Logged out successfully"}

# ==================== CARE LINKS ====================

@api_router.post("/care/requests", response_model=dict)
async def send_care_request(
    request_data: CareRequestCreate,
    current_user: User = Depends(get_current_user)
):
    require_role(current_user, "caretaker")
    patient_email = request_data.patient_email.strip().lower()
    patient = await db.users.find_one({"email": patient_email, "role": "patient"}, {"_id": 0})
    if not patient:
        raise HTTPException(status_code=404, detail="No patient registered with that email")

    existing = await db.care_links.find_one(
        {"caretaker_id": current_user.user_id, "patient_id": patient["user_id"], "status": {"$in": ["pending", "accepted"]}},
        {"_id": 0}
    )
    if existing:
        return existing

    doc = {
        "id": f"link_{uuid.uuid4().hex[:12]}",
        "caretaker_id": current_user.user_id,
        "caretaker_name": current_user.name,
        "caretaker_email": current_user.email,
        "patient_id": patient["user_id"],
        "patient_name": patient.get("name"),
        "patient_email": patient_email,
        "status": "pending",
        "geofence": None,
        "created_at": datetime.now(timezone.utc).isoformat()
    }
    await db.care_links.insert_one(doc)
    doc.pop("_id", None)
    return doc

@api_router.get("/care/requests", response_model=List[dict])
async def list_care_requests(current_user: User = Depends(get_current_user)):
    field = "caretaker_id" if current_user.role == "caretaker" else "patient_id"
    links = await db.care_links.find(
        {field: current_user.user_id},
        {"_id": 0}
    ).sort("created_at", -1).to_list(200)
    return links

@api_router.patch("/care/requests/{link_id}", response_model=dict)
async def respond_care_request(
    link_id: str,
    decision: CareRequestDecision,
    current_user: User = Depends(get_current_user)
):
    require_role(current_user, "patient")
    status = (decision.status or "").strip().lower()
    if status not in {"accepted", "rejected"}:
        raise HTTPException(status_code=400, detail="Status must be 'accepted' or 'rejected'")
    result = await db.care_links.update_one(
        {"id": link_id, "patient_id": current_user.user_id},
        {"$set": {"status": status, "responded_at": datetime.now(timezone.utc).isoformat()}}
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Care request not found")
    if status == "rejected":
        geofence_monitor.forget(link_id)
    return await db.care_links.find_one({"id": link_id}, {"_id": 0})

@api_router.get("/care/caretakers", response_model=List[dict])
async def list_my_caretakers(current_user: User = Depends(get_current_user)):
    require_role(current_user, "patient")
    return await linked_caretakers(current_user.user_id)

@api_router.put("/care/requests/{link_id}/geofence", response_model=dict)
async def set_geofence(
    link_id: str,
    geofence: GeofenceUpdate,
    current_user: User = Depends(get_current_user)
):
    require_role(current_user, "caretaker")
    link = await db.care_links.find_one(
        {"id": link_id, "caretaker_id": current_user.user_id, "status": "accepted"},
        {"_id": 0}
    )
    if not link:
        raise HTTPException(status_code=404, detail="Could not find connection record")

    center_lat, center_lng = geofence.center_latitude, geofence.center_longitude
    if center_lat is None or center_lng is None:
        # Default the centre to the patient's last known position.
        tracking = await db.tracking.find_one({"user_id": link["patient_id"]}, {"_id": 0})
        location = (tracking or {}).get("location")
        if not location:
            raise HTTPException(status_code=400, detail="No location data available to set Safe Zone")
        center_lat, center_lng = location["latitude"], location["longitude"]

    if not (-90 <= center_lat <= 90 and -180 <= center_lng <= 180):
        raise HTTPException(status_code=400, detail="Safe Zone centre is outside valid coordinates")

    zone = {
        "center_latitude": center_lat,
        "center_longitude": center_lng,
        "radius_meters": geofence.radius_meters,
        "active": geofence.active,
        "updated_at": datetime.now(timezone.utc).isoformat()
    }
    await db.care_links.update_one({"id": link_id}, {"$set": {"geofence": zone}})
    return await db.care_links.find_one({"id": link_id}, {"_id": 0})

@api_router.delete("/care/requests/{link_id}/geofence")
async def clear_geofence(
    link_id: str,
    current_user: User = Depends(get_current_user)
):
    require_role(current_user, "caretaker")
    result = await db.care_links.update_one(
        {"id": link_id, "caretaker_id": current_user.user_id},
        {"$set": {"geofence": None, "geofence_is_outside": False}}
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Could not find connection record")
    geofence_monitor.forget(link_id)
    return {"message": "Safe Zone removed"}

# ==================== LOCATION TRACKING ====================

@api_router.post("/tracking/location", response_model=dict)
async def report_location(
    ping: LocationPing,
    current_user: User = Depends(get_current_user)
):
    """Store the patient's position and evaluate every safe zone set for them."""
    require_role(current_user, "patient")
    simulated = ping.simulated
    latitude, longitude = ping.latitude, ping.longitude
    if latitude is None or longitude is None:
        if not simulated:
            raise HTTPException(status_code=400, detail="latitude and longitude are required")
        latitude, longitude = SIMULATED_LATITUDE, SIMULATED_LONGITUDE

    try:
        validate_coordinate(latitude, longitude)
    except InvalidCoordinate as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    position = Position(latitude=latitude, longitude=longitude)
    geofence_result = await evaluate_patient_geofences(geofence_monitor, current_user, position, ping.image)

    now_iso = position.observed_at.isoformat()
    await run_side_effect(
        db.tracking.update_one(
            {"user_id": current_user.user_id},
            {
                "$set": {
                    "user_id": current_user.user_id,
                    "email": current_user.email,
                    "name": current_user.name,
                    "location": {"latitude": latitude, "longitude": longitude},
                    "last_active": now_iso,
                    "status": "Simulated" if simulated else "Active",
                    "is_simulated": simulated
                }
            },
            upsert=True
        ),
        "Tracking update"
    )
    await run_side_effect(
        db.location_history.insert_one({
            "id": f"loc_{uuid.uuid4().hex[:12]}",
            "user_id": current_user.user_id,
            "latitude": latitude,
            "longitude": longitude,
            "is_simulated": simulated,
            "timestamp": now_iso
        }),
        "Location history insert"
    )

    return {
        "checked_at": now_iso,
        "location": {"latitude": latitude, "longitude": longitude},
        "is_simulated": simulated,
        "geofences": geofence_result["evaluated"],
        "new_alerts": geofence_result["new_alerts"]
    }

@api_router.get("/tracking/patients", response_model=List[dict])
async def get_connected_patients(current_user: User = Depends(get_current_user)):
    require_role(current_user, "caretaker")
    patient_ids = await linked_patient_ids(current_user.user_id)
    if not patient_ids:
        return []
    return await db.tracking.find({"user_id": {"$in": patient_ids}}, {"_id": 0}).to_list(500)

@api_router.get("/tracking/{patient_id}/history", response_model=List[dict])
async def get_location_history(
    patient_id: str,
    limit: int = 500,
    current_user: User = Depends(get_current_user)
):
    owner_id = await resolve_patient_id(current_user, patient_id)
    safe_limit = max(1, min(limit, 2000))
    history = await db.location_history.find(
        {"user_id": owner_id},
        {"_id": 0}
    ).sort("timestamp", -1).to_list(safe_limit)
    history.reverse()
    return history

@api_router.get("/tracking/{patient_id}/snapshots", response_model=List[dict])
async def get_location_snapshots(
    patient_id: str,
    current_user: User = Depends(get_current_user)
):
    owner_id = await resolve_patient_id(current_user, patient_id)
    return await db.location_snapshots.find(
        {"user_id": owner_id},
        {"_id": 0}
    ).sort([("on_date", -1), ("time", -1)]).to_list(60)

# ==================== MEDICINES ====================

@api_router.get("/medicines", response_model=List[dict])
async def get_medicines(
    patient_id: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    owner_id = await resolve_patient_id(current_user, patient_id)
    return await db.medicines.find({"patient_id": owner_id}, {"_id": 0}).sort("created_at", -1).to_list(300)

async def insert_medicine(
    owner_id: str,
    current_user: User,
    name: str,
    dosage: str,
    times: List[str],
    instructions: str,
    source: str = "manual"
) -> dict:
    patient = await db.users.find_one({"user_id": owner_id}, {"_id": 0, "name": 1})
    med = Medicine(
        patient_id=owner_id,
        patient_name=(patient or {}).get("name") or "Patient",
        caretaker_id=current_user.user_id if current_user.role == "caretaker" else None,
        name=name,
        dosage=dosage,
        times=times,
        instructions=instructions or "",
        source=source
    )
    doc = med.model_dump()
    doc["created_at"] = doc["created_at"].isoformat()
    doc["updated_at"] = doc["updated_at"].isoformat()
    await db.medicines.insert_one(doc)
    doc.pop("_id", None)
    return doc

@api_router.post("/medicines", response_model=dict)
async def create_medicine(
    medicine: MedicineCreate,
    patient_id: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    owner_id = await resolve_patient_id(current_user, patient_id)
    times, rejected = normalize_times(medicine.times)
    if rejected:
        raise HTTPException(status_code=400, detail=f"Invalid times (use 24-hour HH:MM): {', '.join(rejected)}")
    if not medicine.name.strip() or not medicine.dosage.strip() or not times:
        raise HTTPException(status_code=400, detail="Name, dosage and at least one time are required")
    return await insert_medicine(owner_id, current_user, medicine.name.strip(), medicine.dosage.strip(), times, medicine.instructions)

@api_router.put("/medicines/{medicine_id}", response_model=dict)
async def update_medicine(
    medicine_id: str,
    medicine: MedicineUpdate,
    patient_id: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    owner_id = await resolve_patient_id(current_user, patient_id)
    update_data = {k: v for k, v in medicine.model_dump().items() if v is not None}
    if "times" in update_data:
        times, rejected = normalize_times(update_data["times"])
        if rejected:
            raise HTTPException(status_code=400, detail=f"Invalid times (use 24-hour HH:MM): {', '.join(rejected)}")
        if not times:
            raise HTTPException(status_code=400, detail="At least one time is required")
        update_data["times"] = times
    update_data["updated_at"] = datetime.now(timezone.utc).isoformat()
    result = await db.medicines.update_one(
        {"id": medicine_id, "patient_id": owner_id},
        {"$set": update_data}
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Medicine not found")
    return await db.medicines.find_one({"id": medicine_id, "patient_id": owner_id}, {"_id": 0})

@api_router.delete("/medicines/{medicine_id}")
async def delete_medicine(
    medicine_id: str,
    patient_id: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    owner_id = await resolve_patient_id(current_user, patient_id)
    result = await db.medicines.delete_one({"id": medicine_id, "patient_id": owner_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Medicine not found")
    await db.dose_acknowledgements.delete_many({"medicine_id": medicine_id})
    return {"message": "Medicine deleted"}

@api_router.post("/medicines/{medicine_id}/taken", response_model=dict)
async def mark_dose_taken(
    medicine_id: str,
    intake: DoseTakenRequest,
    patient_id: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    owner_id = await resolve_patient_id(current_user, patient_id)
    medicine = await db.medicines.find_one({"id": medicine_id, "patient_id": owner_id}, {"_id": 0})
    if not medicine:
        raise HTTPException(status_code=404, detail="Medicine not found")

    minutes = parse_hhmm(intake.time)
    if minutes is None:
        raise HTTPException(status_code=400, detail="time must use 24-hour HH:MM")
    slot, _ = normalize_times([intake.time])
    time_str = slot[0]
    scheduled, _ = normalize_times(medicine.get("times") or [])
    if time_str not in scheduled:
        raise HTTPException(status_code=400, detail=f"{time_str} is not a scheduled time for this medicine")

    on_date = parse_yyyy_mm_dd(intake.on_date) if intake.on_date else local_now().date()
    if intake.on_date and not on_date:
        raise HTTPException(status_code=400, detail="on_date must use YYYY-MM-DD")

    ack_id = f"{medicine_id}_{on_date.isoformat()}_{time_str}"
    await db.dose_acknowledgements.update_one(
        {"id": ack_id},
        {
            "$setOnInsert": {
                "id": ack_id,
                "medicine_id": medicine_id,
                "patient_id": owner_id,
                "on_date": on_date.isoformat(),
                "time": time_str,
                "acknowledged_by_user_id": current_user.user_id,
                "created_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return await db.dose_acknowledgements.find_one({"id": ack_id}, {"_id": 0})

@api_router.get("/medicines/schedule", response_model=dict)
async def get_today_schedule(
    patient_id: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    owner_id = await resolve_patient_id(current_user, patient_id)
    _, _, classification = await classify_for_patients([owner_id], local_now())
    return serialize_classification(classification)

@api_router.get("/tasks", response_model=dict)
async def get_caretaker_tasks(current_user: User = Depends(get_current_user)):
    """Today's medicine slots across every linked patient."""
    require_role(current_user, "caretaker")
    patient_ids = await linked_patient_ids(current_user.user_id)
    now = local_now()
    if not patient_ids:
        return {"on_date": now.date().isoformat(), "slots": [], "warnings": []}
    _, _, classification = await classify_for_patients(patient_ids, now)
    return serialize_classification(classification)

@api_router.get("/reminders/pending", response_model=List[dict])
async def get_pending_reminders(current_user: User = Depends(get_current_user)):
    """Reminders to surface now; each one is returned to a user only once per day."""
    if current_user.role == "caretaker":
        patient_ids = await linked_patient_ids(current_user.user_id)
    else:
        patient_ids = [current_user.user_id]
    if not patient_ids:
        return []

    _, _, classification = await classify_for_patients(patient_ids, local_now())
    # A throwaway ledger yields every due/due-soon slot; the stored claim enforces once-only.
    candidates = ReminderLedger(grace_minutes=REMINDER_DUE_GRACE_MINUTES).collect(classification)
    surfaced = []
    for reminder in candidates:
        if await claim_reminder(current_user.user_id, reminder):
            surfaced.append(serialize_reminder(reminder))
    return surfaced

# ==================== ALERTS ====================

@api_router.get("/alerts", response_model=List[dict])
async def get_alerts(
    only_unread: bool = False,
    current_user: User = Depends(get_current_user)
):
    require_role(current_user, "caretaker")
    query = {"caretaker_id": current_user.user_id}
    if only_unread:
        query["read"] = False
    return await db.alerts.find(query, {"_id": 0}).sort("timestamp", -1).to_list(200)

@api_router.get("/alerts/unread-count", response_model=dict)
async def get_unread_alert_count(current_user: User = Depends(get_current_user)):
    require_role(current_user, "caretaker")
    count = await db.alerts.count_documents({"caretaker_id": current_user.user_id, "read": False})
    return {"unread": count}

@api_router.patch("/alerts/{alert_id}/read")
async def mark_alert_read(
    alert_id: str,
    current_user: User = Depends(get_current_user)
):
    result = await db.alerts.update_one(
        {"id": alert_id, "caretaker_id": current_user.user_id},
        {"$set": {"read": True, "read_at": datetime.now(timezone.utc).isoformat()}}
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"message": "Alert marked as read"}

@api_router.delete("/alerts/{alert_id}")
async def dismiss_alert(
    alert_id: str,
    current_user: User = Depends(get_current_user)
):
    result = await db.alerts.delete_one({"id": alert_id, "caretaker_id": current_user.user_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Alert not found")
    return {"message": "Alert dismissed"}

# ==================== CHAT ====================

async def require_chat_access(current_user: User, other_user_id: str) -> str:
    if other_user_id == current_user.user_id or not await users_are_linked(current_user.user_id, other_user_id):
        raise HTTPException(status_code=403, detail="You can only chat with connected users")
    return chat_id_for(current_user.user_id, other_user_id)

async def insert_chat_message(
    chat_id: str,
    sender_id: str,
    message_type: str,
    text: Optional[str] = None,
    media: Optional[str] = None,
    is_automated: bool = False
) -> dict:
    doc = {
        "id": f"msg_{uuid.uuid4().hex[:12]}",
        "chat_id": chat_id,
        "sender_id": sender_id,
        "type": message_type,
        "text": text,
        "media": media,
        "is_automated": is_automated,
        "created_at": datetime.now(timezone.utc).isoformat()
    }
    await db.chat_messages.insert_one(doc)
    doc.pop("_id", None)
    return doc

@api_router.get("/chats/{other_user_id}/messages", response_model=List[dict])
async def get_chat_messages(
    other_user_id: str,
    current_user: User = Depends(get_current_user)
):
    chat_id = await require_chat_access(current_user, other_user_id)
    return await db.chat_messages.find({"chat_id": chat_id}, {"_id": 0}).sort("created_at", 1).to_list(500)

@api_router.post("/chats/{other_user_id}/messages", response_model=dict)
async def send_chat_message(
    other_user_id: str,
    message: ChatMessageCreate,
    current_user: User = Depends(get_current_user)
):
    chat_id = await require_chat_access(current_user, other_user_id)
    message_type = (message.type or "text").strip().lower()
    if message_type not in CHAT_MESSAGE_TYPES:
        raise HTTPException(status_code=400, detail="type must be text, image or audio")
    if message_type == "text":
        if not (message.text or "").strip():
            raise HTTPException(status_code=400, detail="Message text is required")
    else:
        media = message.media or ""
        if not (media.startswith("data:") or media.startswith("https://")):
            raise HTTPException(status_code=400, detail="media must be a data URL or https URL")
    return await insert_chat_message(chat_id, current_user.user_id, message_type, (message.text or "").strip() or None, message.media)

@api_router.delete("/chats/{other_user_id}/messages")
async def clear_chat(
    other_user_id: str,
    current_user: User = Depends(get_current_user)
):
    chat_id = await require_chat_access(current_user, other_user_id)
    result = await db.chat_messages.delete_many({"chat_id": chat_id})
    return {"message": "Chat cleared", "deleted": result.deleted_count}

# ==================== AI ASSISTANT ====================

async def complete_chat(messages: List[dict], temperature: float = 0.7, max_tokens: int = 1024) -> str:
    completion = await get_chat_client().chat.completions.create(
        model=GROQ_CHAT_MODEL,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens
    )
    return completion.choices[0].message.content or ""

async def execute_assistant_commands(
    commands: List[Any],
    current_user: User,
    target_patient_id: Optional[str],
    contacts: List[dict]
) -> Tuple[List[dict], List[dict]]:
    """Act on validated commands; anything not allowed for this user is rejected."""
    executed = []
    rejected = []
    contacts_by_id = {c["id"]: c for c in contacts}
    for command in commands:
        if isinstance(command, SendMessageCommand):
            contact = contacts_by_id.get(command.recipient_id)
            if not contact:
                rejected.append({"kind": command.kind, "reason": "recipient is not connected to you"})
                continue
            await insert_chat_message(
                chat_id_for(current_user.user_id, contact["id"]),
                current_user.user_id,
                "text",
                text=f"AI Assistant: {command.message}",
                is_automated=True
            )
            logger.info(f"AI sent message from {current_user.user_id} to {contact['id']}")
            executed.append({"kind": command.kind, "recipient_id": contact["id"], "recipient_name": contact.get("name")})
        elif isinstance(command, AddMedicineCommand):
            if not target_patient_id:
                rejected.append({"kind": command.kind, "reason": "no patient selected"})
                continue
            doc = await insert_medicine(
                target_patient_id,
                current_user,
                command.name.strip(),
                command.dosage.strip(),
                command.times,
                command.instructions,
                source="ai_command"
            )
            logger.info(f"AI added medicine {doc['id']} for {target_patient_id}")
            executed.append({"kind": command.kind, "medicine_id": doc["id"], "name": doc["name"]})
        elif isinstance(command, VisualizeCommand):
            rejected.append({"kind": command.kind, "reason": "images are only available in the health advisor"})
        elif isinstance(command, UnrecognizedCommand):
            rejected.append({"kind": command.kind, "tag": command.tag, "reason": command.reason})
    return executed, rejected

@api_router.post("/ai/chat", response_model=dict)
async def ai_chat(
    chat_request: AIChatRequest,
    current_user: User = Depends(get_current_user)
):
    """Assistant chat that can message connected users or add medicines."""
    message = (chat_request.message or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    if not os.environ.get("GROQ_API_KEY"):
        raise HTTPException(status_code=500, detail="API key missing")

    if current_user.role == "patient":
        target_patient_id = current_user.user_id
        contacts = await linked_caretakers(current_user.user_id)
        contact_label = "AVAILABLE CARETAKERS"
    else:
        target_patient_id = None
        if chat_request.target_patient_id:
            target_patient_id = await resolve_patient_id(current_user, chat_request.target_patient_id)
        patient_ids = await linked_patient_ids(current_user.user_id)
        patients = await db.users.find(
            {"user_id": {"$in": patient_ids}},
            {"_id": 0, "user_id": 1, "name": 1}
        ).to_list(200)
        contacts = [{"id": p["user_id"], "name": p.get("name") or "Patient"} for p in patients]
        contact_label = "AVAILABLE PATIENTS"

    system_prompt = BASE_SYSTEM_PROMPT
    if contacts:
        system_prompt += f"\n\n{contact_label}:\n" + "\n".join(f"- Name: {c['name']}, ID: {c['id']}" for c in contacts)
    else:
        system_prompt += "\n\n(No one is currently connected.)"

    messages = [{"role": "system", "content": system_prompt}]
    messages.extend(normalize_history(chat_request.history))
    messages.append({"role": "user", "content": message})

    try:
        raw_reply = await complete_chat(messages)
    except Exception as e:
        logger.error(f"Assistant chat error: {e}")
        return {"text": "Sorry, I encountered an error.", "executed": [], "rejected": []}

    parsed = parse_assistant_reply(raw_reply)
    executed, rejected = await execute_assistant_commands(parsed.commands, current_user, target_patient_id, contacts)
    return {"text": parsed.text, "executed": executed, "rejected": rejected}

# ==================== HEALTH ADVISOR ====================

@api_router.get("/health-advisor/sessions", response_model=List[dict])
async def list_health_sessions(current_user: User = Depends(get_current_user)):
    return await db.health_chats.find(
        {"user_id": current_user.user_id},
        {"_id": 0}
    ).sort("last_modified", -1).to_list(200)

@api_router.get("/health-advisor/sessions/{session_id}/messages", response_model=List[dict])
async def get_health_session_messages(
    session_id: str,
    current_user: User = Depends(get_current_user)
):
    session = await db.health_chats.find_one({"id": session_id, "user_id": current_user.user_id}, {"_id": 0})
    if not session:
        raise HTTPException(status_code=404, detail="Chat session not found")
    return await db.health_chat_messages.find(
        {"session_id": session_id},
        {"_id": 0}
    ).sort("created_at", 1).to_list(500)

@api_router.delete("/health-advisor/sessions/{session_id}")
async def delete_health_session(
    session_id: str,
    current_user: User = Depends(get_current_user)
):
    result = await db.health_chats.delete_one({"id": session_id, "user_id": current_user.user_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Chat session not found")
    await db.health_chat_messages.delete_many({"session_id": session_id})
    return {"message": "Chat session deleted"}

async def add_health_message(session_id: str, role: str, parts: str, message_type: str = "text") -> dict:
    doc = {
        "id": f"hmsg_{uuid.uuid4().hex[:12]}",
        "session_id": session_id,
        "role": role,
        "parts": parts,
        "type": message_type,
        "created_at": datetime.now(timezone.utc).isoformat()
    }
    await db.health_chat_messages.insert_one(doc)
    doc.pop("_id", None)
    return doc

@api_router.post("/health-advisor/messages", response_model=dict)
async def send_health_advisor_message(
    advisor_request: HealthAdvisorRequest,
    current_user: User = Depends(get_current_user)
):
    message = (advisor_request.message or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    if not os.environ.get("GROQ_API_KEY"):
        raise HTTPException(status_code=500, detail="API key missing")

    now_iso = datetime.now(timezone.utc).isoformat()
    session_id = advisor_request.session_id
    if session_id:
        result = await db.health_chats.update_one(
            {"id": session_id, "user_id": current_user.user_id},
            {"$set": {"last_modified": now_iso}}
        )
        if result.matched_count == 0:
            raise HTTPException(status_code=404, detail="Chat session not found")
    else:
        session_id = f"hchat_{uuid.uuid4().hex[:12]}"
        await db.health_chats.insert_one({
            "id": session_id,
            "user_id": current_user.user_id,
            "role": current_user.role,
            "title": message[:30] + ("..." if len(message) > 30 else ""),
            "created_at": now_iso,
            "last_modified": now_iso
        })

    history = await db.health_chat_messages.find(
        {"session_id": session_id, "type": "text"},
        {"_id": 0}
    ).sort("created_at", 1).to_list(100)
    user_msg = await add_health_message(session_id, "user", message)

    messages = [{"role": "system", "content": HEALTH_ADVISOR_PROMPT}]
    messages.extend(normalize_history(history))
    messages.append({"role": "user", "content": message})

    try:
        raw_reply = await complete_chat(messages)
    except Exception as e:
        logger.error(f"Health advisor error: {e}")
        raw_reply = "I'm sorry, I'm having trouble answering right now. Could you try again?"

    parsed = parse_assistant_reply(raw_reply)
    replies = []
    if parsed.text:
        replies.append(await add_health_message(session_id, "model", parsed.text))
    for command in parsed.commands:
        if isinstance(command, VisualizeCommand):
            replies.append(await add_health_message(session_id, "model", build_image_url(command.prompt), "image"))
        else:
            logger.info(f"Health advisor ignored command {command.kind}")

    return {"session_id": session_id, "user_message": user_msg, "replies": replies}

# ==================== ACTIVITY ANALYSIS ====================

@api_router.post("/ai/analyze", response_model=dict)
async def analyze_activity(
    analysis_request: ActivityAnalysisRequest,
    current_user: User = Depends(get_current_user)
):
    """Ask the analysis model whether recent patient activity looks risky."""
    if not os.environ.get("GEMINI_API_KEY"):
        raise HTTPException(status_code=500, detail="Gemini API Key not configured")

    prompt = (
        "Analyze the following patient activity data and determine if there is a safety risk.\n"
        "The patient is expected to be active during the day.\n\n"
        f"Data: {json.dumps(analysis_request.activity_data, default=str)}\n\n"
        "If the patient has been inactive for too long or shows abnormal patterns, return a JSON object with:\n"
        "{ \"riskLevel\": \"high\" | \"medium\" | \"low\", \"alert\": \"Reason for alert\" }\n"
        "Otherwise return:\n"
        "{ \"riskLevel\": \"low\", \"alert\": null }\n"
        "Return ONLY valid JSON."
    )
    try:
        completion = await get_analysis_client().chat.completions.create(
            model=GEMINI_ANALYZE_MODEL,
            temperature=0,
            response_format={"type": "json_object"},
            messages=[{"role": "user", "content": prompt}]
        )
        raw = strip_code_fences(completion.choices[0].message.content or "")
        risk = ActivityRisk.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        logger.error(f"Activity analysis returned invalid JSON: {e}")
        raise HTTPException(status_code=500, detail="Failed to analyze")
    except Exception as e:
        logger.error(f"Error in activity analysis: {e}")
        raise HTTPException(status_code=500, detail="Failed to analyze")
    return risk.model_dump(by_alias=True)

# ==================== ROOT ====================

@api_router.get("/")
async def root():
    return {"message": "CareConnect API"}

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def start_background_monitors():
    await db.reminder_notifications.create_index("id", unique=True)
    await db.dose_acknowledgements.create_index("id", unique=True)
    await db.location_snapshots.create_index("id", unique=True)
    if ENABLE_BACKGROUND_MONITORS:
        scheduler.start()
        logger.info(f"Scheduler started with jobs: {[job.id for job in scheduler.get_jobs()]}")

@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    client.close()
