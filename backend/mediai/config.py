"""
Configuration settings for the MediAI consultation backend.

Chain of Thought:
- Load environment variables for API keys and hosted service endpoints
- Define polling and slot constants used by the booking flow
- Define specialist keyword mappings used to narrow the doctor search
"""

import os
from dotenv import load_dotenv

load_dotenv()

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")

APPOINTMENT_API_BASE_URL = os.getenv(
    "APPOINTMENT_API_BASE_URL",
    "https://doctor-appointment-backend-7htx.onrender.com/api"
)
APPOINTMENT_API_TIMEOUT = float(os.getenv("APPOINTMENT_API_TIMEOUT", "30"))

# The login/verification flow writes the bearer token into this JSON file.
APPOINTMENT_TOKEN_PATH = os.getenv("APPOINTMENT_TOKEN_PATH", ".mediai/credentials.json")
APPOINTMENT_TOKEN_KEY = "appointment_auth_token"
APPOINTMENT_CACHE_PATH = os.getenv("APPOINTMENT_CACHE_PATH", ".mediai/appointments.json")

ID_PROVENANCE_PREFIX = "firebase_"

FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH")
CONSULTATIONS_COLLECTION = "consultations"
SYMPTOM_LOGS_COLLECTION = "symptomLogs"

CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLOUDINARY_UPLOAD_PRESET = os.getenv("CLOUDINARY_UPLOAD_PRESET")

STATUS_POLL_INTERVAL = float(os.getenv("STATUS_POLL_INTERVAL", "30"))
STATUS_POLL_DURATION = float(os.getenv("STATUS_POLL_DURATION", "300"))
SLOT_WIDTH_HOURS = int(os.getenv("SLOT_WIDTH_HOURS", "2"))

ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

BOOKING_KEYWORDS = ["consult", "see a doctor", "specialist", "appointment", "physician"]

# Marker written into the confirmation message; used to find pending
# appointments when a consultation is resumed.
REQUEST_SENT_MARKER = "Appointment request sent!"

SPECIALIST_MAPPING = {
    "Cardiologist": {
        "keywords": ["chest pain", "heart", "palpitation", "blood pressure", "cardiac", "heartbeat"],
        "description": "Heart and cardiovascular system specialist"
    },
    "Dermatologist": {
        "keywords": ["skin", "rash", "acne", "eczema", "psoriasis", "hair loss", "itching"],
        "description": "Skin, hair, and nail specialist"
    },
    "Orthopedic": {
        "keywords": ["bone", "joint", "fracture", "back pain", "spine", "knee", "shoulder", "arthritis"],
        "description": "Bone and joint specialist"
    },
    "Neurologist": {
        "keywords": ["headache", "migraine", "seizure", "numbness", "dizziness", "nerve"],
        "description": "Brain and nervous system specialist"
    },
    "Gastroenterologist": {
        "keywords": ["stomach", "digestion", "acidity", "liver", "constipation", "diarrhea"],
        "description": "Digestive system specialist"
    },
    "Pulmonologist": {
        "keywords": ["breathing", "lungs", "asthma", "cough", "shortness of breath"],
        "description": "Lung and respiratory specialist"
    },
    "Ophthalmologist": {
        "keywords": ["eye", "vision", "blurry", "cataract", "glaucoma"],
        "description": "Eye specialist"
    },
    "Psychiatrist": {
        "keywords": ["anxiety", "depression", "stress", "mental health", "panic"],
        "description": "Mental health specialist"
    },
}
