import copy
import json
import logging
import os
import tempfile
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from dotenv import find_dotenv, set_key

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parent
ENV_PATH = find_dotenv(usecwd=True) or str(ROOT / "env" / ".env")

SECRET_MASK = "******"
DEFAULT_FOLDER = "newzlettr"
SMTP_ENCRYPTIONS = ("TLS/SSL", "STARTTLS", "None")
IMAGE_HOSTS = ("embedded", "cloudinary")
PLAIN_FIELDS = ("plexUrl", "plexToken", "fromAddress", "smtpEmailLogin", "smtpServer")


def config_path() -> Path:
    return Path(os.environ.get("NEWZLETTR_CONFIG") or ROOT / "config" / "config.json")


def ensure_data_key() -> str:
    key = os.getenv("DATA_ENC_KEY")
    if key:
        return key

    new_key = Fernet.generate_key().decode()

    env_file = Path(ENV_PATH)
    if not env_file.exists():
        env_file.parent.mkdir(parents=True, exist_ok=True)
        env_file.touch()
        try:
            env_file.chmod(0o600)
        except OSError:
            pass

    set_key(str(env_file), "DATA_ENC_KEY", new_key)
    os.environ["DATA_ENC_KEY"] = new_key
    logger.info("Generated a new DATA_ENC_KEY in %s", env_file)
    return new_key


def _fernet():
    return Fernet(ensure_data_key())


def encrypt(text: str) -> str:
    return _fernet().encrypt(text.encode()).decode()


def decrypt(token: str) -> str:
    if token is None:
        return ""
    try:
        return _fernet().decrypt(token.encode()).decode()
    except InvalidToken:
        return token


def get_secret(cfg, *path) -> str:
    node = cfg
    for key in path:
        if not isinstance(node, dict):
            return ""
        node = node.get(key)
    return decrypt(node) if isinstance(node, str) and node else ""


def load_config() -> dict:
    path = config_path()
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
        cfg = json.loads(raw or "{}")
    except (OSError, ValueError) as e:
        logger.warning("Could not read config %s: %s", path, e)
        return {}
    return cfg if isinstance(cfg, dict) else {}


def save_config(cfg):
    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".config-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(cfg, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def public_config(cfg) -> dict:
    """Copy of the config that is safe to hand to the browser."""
    out = copy.deepcopy(cfg) if isinstance(cfg, dict) else {}
    out.pop("smtpEmailPassword", None)
    cloud = out.get("cloudinary")
    if isinstance(cloud, dict):
        for key in ("apiSecret", "api_secret"):
            if cloud.get(key):
                cloud[key] = SECRET_MASK
    return out


def _is_new_secret(value):
    return isinstance(value, str) and value != "" and value != SECRET_MASK


def _port(value):
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid smtpPort: {value!r}")
    if not 1 <= port <= 65535:
        raise ValueError(f"Invalid smtpPort: {value!r}")
    return port


def update_config(payload, cfg=None) -> dict:
    """Merge a settings payload into the stored config and persist it.

    Keys missing from ``payload`` keep their stored value. Secrets are only
    replaced when a real new value is posted and are stored encrypted.
    """
    if not isinstance(payload, dict):
        raise ValueError("Settings payload must be a JSON object")
    cfg = copy.deepcopy(cfg if cfg is not None else load_config())

    for field in PLAIN_FIELDS:
        if field in payload and payload[field] is not None:
            cfg[field] = str(payload[field]).strip()

    if payload.get("tautulliUrl") is not None or payload.get("tautulliApiKey") is not None:
        nested = cfg.get("tautulli") if isinstance(cfg.get("tautulli"), dict) else {}
        if payload.get("tautulliUrl") is not None:
            url = str(payload["tautulliUrl"]).strip().rstrip("/")
            cfg["tautulliUrl"] = url
            nested["url"] = url
            nested.pop("baseUrl", None)
            nested.pop("host", None)
        if payload.get("tautulliApiKey") is not None:
            api_key = str(payload["tautulliApiKey"]).strip()
            cfg["tautulliApiKey"] = api_key
            nested["apiKey"] = api_key
            nested.pop("apikey", None)
            nested.pop("token", None)
        cfg["tautulli"] = nested

    if payload.get("smtpPort") not in (None, ""):
        cfg["smtpPort"] = _port(payload["smtpPort"])

    if payload.get("smtpEncryption") is not None:
        if payload["smtpEncryption"] not in SMTP_ENCRYPTIONS:
            raise ValueError(f"Invalid smtpEncryption: {payload['smtpEncryption']!r}")
        cfg["smtpEncryption"] = payload["smtpEncryption"]

    if _is_new_secret(payload.get("smtpEmailPassword")):
        cfg["smtpEmailPassword"] = encrypt(payload["smtpEmailPassword"])

    if payload.get("imageHost") is not None:
        if payload["imageHost"] not in IMAGE_HOSTS:
            raise ValueError(f"Invalid imageHost: {payload['imageHost']!r}")
        cfg["imageHost"] = payload["imageHost"]

    posted_cloud = payload.get("cloudinary")
    if isinstance(posted_cloud, dict):
        cloud = cfg.get("cloudinary") if isinstance(cfg.get("cloudinary"), dict) else {}
        for key in ("cloudName", "apiKey"):
            if posted_cloud.get(key) is not None:
                cloud[key] = str(posted_cloud[key]).strip()
        cloud["folder"] = str(posted_cloud.get("folder") or cloud.get("folder") or DEFAULT_FOLDER).strip()
        if _is_new_secret(posted_cloud.get("apiSecret")):
            cloud["apiSecret"] = encrypt(posted_cloud["apiSecret"])
        cfg["cloudinary"] = cloud

    save_config(cfg)
    return cfg
