from dotenv import load_dotenv
from pathlib import Path
import os

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'glowguide_db')

# JWT Configuration
JWT_SECRET = os.environ.get('JWT_SECRET', 'glowguide-secret-key-change-in-production')
JWT_ALGORITHM = 'HS256'
JWT_EXPIRATION_HOURS = 24 * 7  # 1 week

# External analysis services
OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY', '')
OPENAI_MODEL = os.environ.get('OPENAI_MODEL', 'gpt-4o')
GOOGLE_VISION_API_KEY = os.environ.get('GOOGLE_VISION_API_KEY', '')
GOOGLE_VISION_URL = os.environ.get(
    'GOOGLE_VISION_URL', 'https://vision.googleapis.com/v1/images:annotate'
)
EXTERNAL_API_TIMEOUT = int(os.environ.get('EXTERNAL_API_TIMEOUT', '60'))

# Analysis lifetimes
TEMP_ANALYSIS_TTL_MINUTES = int(os.environ.get('TEMP_ANALYSIS_TTL_MINUTES', '60'))
# Extra lifetime before Mongo's TTL monitor sweeps an expired ticket
TEMP_TICKET_GRACE_SECONDS = int(os.environ.get('TEMP_TICKET_GRACE_SECONDS', str(24 * 60 * 60)))
REPORT_RETENTION_DAYS = int(os.environ.get('REPORT_RETENTION_DAYS', '365'))
PROGRESS_INTERVAL_DAYS = int(os.environ.get('PROGRESS_INTERVAL_DAYS', '30'))

MAX_IMAGE_BYTES = int(os.environ.get('MAX_IMAGE_BYTES', str(5 * 1024 * 1024)))

CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', '*').split(',') if o.strip()]
