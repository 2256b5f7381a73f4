import os
from dotenv import load_dotenv

# Ensure env vars are loaded once here
load_dotenv()

# Model used for the per-keyword brand analysis
DEFAULT_LLM_MODEL = os.getenv("DEFAULT_LLM_MODEL", "gpt-4o")

# Model used by the free-form /ai-analysis endpoint
DEFAULT_AI_ANALYSIS_MODEL = os.getenv("DEFAULT_AI_ANALYSIS_MODEL", DEFAULT_LLM_MODEL)

LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "4096"))
AI_ANALYSIS_MAX_TOKENS = int(os.getenv("AI_ANALYSIS_MAX_TOKENS", "800"))

# Per-user sliding window for /ai-analysis
AI_ANALYSIS_RATE_LIMIT = int(os.getenv("AI_ANALYSIS_RATE_LIMIT", "5"))
AI_ANALYSIS_RATE_WINDOW_SECONDS = int(os.getenv("AI_ANALYSIS_RATE_WINDOW_SECONDS", "60"))

# Auth
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

# New accounts start on the trial plan for this many days
TRIAL_DAYS = int(os.getenv("TRIAL_DAYS", "14"))

# Payments (Stripe). Checkout is disabled while the secret key is unset.
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_PRICE_BASIC = os.getenv("STRIPE_PRICE_BASIC")
STRIPE_PRICE_GOLD = os.getenv("STRIPE_PRICE_GOLD")

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173").rstrip("/")
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", FRONTEND_URL).split(",")
    if o.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
