import os

# 환경 변수 기반 설정. 규칙 값(지각 시간, 벌금 등)은 DB의 SystemConfig에 저장된다.

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./onepass.db")

# Render의 Postgres 주소 호환성 처리 (postgres:// -> postgresql://)
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

SECRET_KEY = os.getenv("SECRET_KEY", "a-very-secret-key-for-local-development")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# DB 초기화용 비밀키
INIT_DB_SECRET = os.getenv("INIT_DB_SECRET", "local-init-secret")

# 글로벌 컨트롤러 계정 (DB에 저장되지 않음)
MASTER_ID = os.getenv("MASTER_ID", "VNG_MASTER")
MASTER_PASSWORD = os.getenv("MASTER_PASSWORD", "")

DEFAULT_MEMBER_PASSWORD = os.getenv("DEFAULT_MEMBER_PASSWORD", "1234")
DEFAULT_ORGANIZATION = os.getenv("DEFAULT_ORGANIZATION", "CAC_01")

# 스캔 시 먼저 조회할 저장소: "member" 또는 "visitor"
SCAN_PRIORITY = os.getenv("SCAN_PRIORITY", "member").strip().lower()

SYNC_SOURCES = [
    s.strip()
    for s in os.getenv("SYNC_SOURCES", "Import-MGT,Import-NGV,Import-NGG,Import-MAM").split(",")
    if s.strip()
]

# 소스 시트별 기본 권한 (명시되지 않은 소스는 Member)
SOURCE_ROLES = {
    "Import-MGT": "Staff",
}

SHEET_TIMEOUT_SECONDS = float(os.getenv("SHEET_TIMEOUT_SECONDS", "15"))

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
GEMINI_URL = os.getenv(
    "GEMINI_URL",
    "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
)
INSIGHT_TIMEOUT_SECONDS = float(os.getenv("INSIGHT_TIMEOUT_SECONDS", "20"))

VISITOR_PASS_HOURS = int(os.getenv("VISITOR_PASS_HOURS", "4"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# 하드웨어 노드 공유 키 (X-Device-Key). 비어 있으면 검사하지 않음
DEVICE_KEY = os.getenv("DEVICE_KEY", "")
