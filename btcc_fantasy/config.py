import os

ENV = os.getenv("ENV", "development")

if ENV == "production":
    FRONTEND_ORIGINS = [o for o in os.getenv("FRONTEND_ORIGINS", "").split(",") if o]
    MONGO_URL = os.getenv("MONGO_URL")  # set by the hosting platform
    API_BASE_URL = os.getenv("API_BASE_URL", "")
else:
    FRONTEND_ORIGINS = ["http://localhost:3000"]
    MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
    API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")

MONGO_DB = os.getenv("MONGO_DB", "btcc_fantasy")

JWT_SECRET = os.getenv("JWT_SECRET", "btcc-fantasy-dev-secret-change-me-in-production")
JWT_ALGORITHM = "HS256"
SESSION_TOKEN_DAYS = int(os.getenv("SESSION_TOKEN_DAYS", "14"))

# Step-up credential for catalog writes
ELEVATION_SECRET = os.getenv("ELEVATION_SECRET", "")
ELEVATION_MINUTES = int(os.getenv("ELEVATION_MINUTES", "15"))

REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))

ROSTER_SIZE = int(os.getenv("ROSTER_SIZE", "6"))
REQUIRED_CATEGORIES = [
    c.strip() for c in os.getenv("REQUIRED_CATEGORIES", "M,JS,I").split(",") if c.strip()
]
URGENT_WINDOW_HOURS = int(os.getenv("URGENT_WINDOW_HOURS", "24"))

ELIGIBILITY_POLL_SECONDS = float(os.getenv("ELIGIBILITY_POLL_SECONDS", "60"))
ELEVATION_SWEEP_SECONDS = float(os.getenv("ELEVATION_SWEEP_SECONDS", "60"))

# Header carrying the step-up token on catalog writes (primary token stays in Authorization)
ELEVATION_HEADER = "X-Elevation-Token"
