import os
from dotenv import load_dotenv

load_dotenv()

# Storage
DATA_DIR = os.getenv("WARDEN_DATA_DIR", "var/data")
KEYRING_DIR = os.getenv("WARDEN_KEYRING_DIR", "keys")

# Policy / attestor configuration files
POLICY_FILE = os.getenv("WARDEN_POLICY_FILE", "config/policy.yaml")
ATTESTORS_FILE = os.getenv("WARDEN_ATTESTORS_FILE", "config/attestors.yaml")
SETTINGS_FILE = os.getenv("WARDEN_SETTINGS_FILE", "config/warden.yml")

# Remote collaborators (empty -> local backends)
SCANNER_URL = os.getenv("WARDEN_SCANNER_URL", "")
KMS_URL = os.getenv("WARDEN_KMS_URL", "")
ADMISSION_URL = os.getenv("WARDEN_ADMISSION_URL", "")
HTTP_TIMEOUT_SEC = float(os.getenv("WARDEN_HTTP_TIMEOUT_SEC", "10"))

# Scan polling / retry budget
SCAN_TIMEOUT_SEC = float(os.getenv("WARDEN_SCAN_TIMEOUT_SEC", "300"))
SCAN_POLL_INTERVAL_SEC = float(os.getenv("WARDEN_SCAN_POLL_INTERVAL_SEC", "5"))
SCAN_MAX_ATTEMPTS = int(os.getenv("WARDEN_SCAN_MAX_ATTEMPTS", "3"))
SIGN_MAX_ATTEMPTS = int(os.getenv("WARDEN_SIGN_MAX_ATTEMPTS", "3"))
BACKOFF_BASE_SEC = float(os.getenv("WARDEN_BACKOFF_BASE_SEC", "1.0"))

# Default attestor identity (the lab's "vulnerability-attestor")
ATTESTOR_NAME = os.getenv("WARDEN_ATTESTOR", "vulnerability-attestor")
