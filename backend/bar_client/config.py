import os
from dotenv import load_dotenv

load_dotenv()


class ClientSettings:
    api_url: str = os.getenv("OPENBAR_API_URL", "http://localhost:8000")
    api_email: str = os.getenv("OPENBAR_API_EMAIL", "")
    api_password: str = os.getenv("OPENBAR_API_PASSWORD", "")
    api_token: str = os.getenv("OPENBAR_API_TOKEN", "")
    request_timeout: float = float(os.getenv("OPENBAR_REQUEST_TIMEOUT", "30"))

    # Local queue and preferences survive restarts in this file
    store_path: str = os.getenv("OPENBAR_STORE_PATH", os.path.expanduser("~/.openbar/state.json"))

    refresh_debounce_ms: int = int(os.getenv("OPENBAR_REFRESH_DEBOUNCE_MS", "250"))
    expiry_poll_seconds: float = float(os.getenv("OPENBAR_EXPIRY_POLL_SECONDS", "1"))


client_settings = ClientSettings()
