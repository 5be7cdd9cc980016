import os

from dotenv import load_dotenv

load_dotenv()

DB_URL = os.getenv("DB_URL", "postgresql+psycopg2://postgres:postgres@db:5432/registry")

WORKBOOK_PATH = os.getenv("WORKBOOK_PATH", "data/raw/Tablas Sistema Registro.xlsx")
# Optional two-column CSV (name variant, canonical CP). Missing file is fine.
CLINICIAN_ALIAS_PATH = os.getenv("CLINICIAN_ALIAS_PATH", "docs/clinicians-map.csv")
SYNC_LOG_DIR = os.getenv("SYNC_LOG_DIR", "data/logs")

SOURCE_TIMEZONE = os.getenv("SOURCE_TIMEZONE", "America/Montevideo")
NAME_MATCH_THRESHOLD = float(os.getenv("NAME_MATCH_THRESHOLD", "0.8"))

STORE_CONNECT_ATTEMPTS = int(os.getenv("STORE_CONNECT_ATTEMPTS", "3"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "0") in {"1", "true", "yes"}
