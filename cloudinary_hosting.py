import json
import logging
import os
import posixpath
import threading
from pathlib import Path

import cloudinary
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader

from config_store import DEFAULT_FOLDER, ROOT, decrypt

logger = logging.getLogger(__name__)

ALLOWED_EXT = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".svg"}

_map_lock = threading.Lock()
_url_map = None


class CloudinaryConfigError(Exception):
    pass


def map_path() -> Path:
    return Path(os.environ.get("CLOUDINARY_MAP_PATH") or ROOT / "config" / "cloudinary_urls.json")


def cloudinary_settings(cfg, environ) -> dict:
    cfg = cfg if isinstance(cfg, dict) else {}
    block = cfg.get("cloudinary") if isinstance(cfg.get("cloudinary"), dict) else {}
    secret = block.get("apiSecret") or block.get("api_secret") or ""
    return {
        "cloud_name": environ.get("CLOUDINARY_CLOUD_NAME") or block.get("cloudName") or block.get("cloud_name") or "",
        "api_key": environ.get("CLOUDINARY_API_KEY") or block.get("apiKey") or block.get("api_key") or "",
        "api_secret": environ.get("CLOUDINARY_API_SECRET") or (decrypt(secret) if secret else ""),
        "folder": environ.get("CLOUDINARY_FOLDER") or block.get("folder") or block.get("path") or DEFAULT_FOLDER,
    }


def configure(settings):
    missing = [name for name in ("cloud_name", "api_key", "api_secret") if not settings.get(name)]
    if missing:
        raise CloudinaryConfigError(f"Cloudinary not configured (missing {', '.join(missing)})")
    cloudinary.config(
        cloud_name=settings["cloud_name"],
        api_key=settings["api_key"],
        api_secret=settings["api_secret"],
        secure=True,
    )


def check_connection(settings):
    configure(settings)
    return cloudinary.api.ping()


def clear_folder(settings, folder):
    configure(settings)
    folder = (folder or "").strip().strip("/") or DEFAULT_FOLDER
    deleted = 0
    while True:
        result = cloudinary.api.delete_resources_by_prefix(f"{folder}/", resource_type="image")
        deleted += len(result.get("deleted") or {})
        if not result.get("partial"):
            break
    logger.info("Cleared %d images from Cloudinary folder %s", deleted, folder)
    return deleted


def load_url_map(path=None) -> dict:
    path = Path(path) if path else map_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning("Could not read Cloudinary map %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def save_url_map(url_map, path=None):
    path = Path(path) if path else map_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(url_map, f, indent=2)


def reload_url_map() -> dict:
    global _url_map
    fresh = load_url_map()
    with _map_lock:
        _url_map = fresh
    return fresh


def hosted_url(rel):
    with _map_lock:
        current = _url_map
    if current is None:
        current = reload_url_map()
    return current.get(rel)


def walk_images(public_dir):
    for dirpath, dirnames, filenames in os.walk(public_dir):
        dirnames.sort()
        for name in sorted(filenames):
            if os.path.splitext(name)[1].lower() in ALLOWED_EXT:
                yield os.path.join(dirpath, name)


def upload_static_images(public_dir, map_file, folder_root=DEFAULT_FOLDER):
    """Upload every image under ``public_dir`` that the URL map does not know yet.

    Folder structure is kept under ``folder_root``. Returns ``(rel, url)``
    pairs for the new uploads; the map is saved even when some uploads fail.
    """
    url_map = load_url_map(map_file)
    uploaded = []

    for file_path in walk_images(public_dir):
        rel = os.path.relpath(file_path, public_dir).replace(os.sep, "/")
        if url_map.get(rel):
            continue

        rel_dir = posixpath.dirname(rel)
        folder = posixpath.join(folder_root, rel_dir) if rel_dir else folder_root

        try:
            result = cloudinary.uploader.upload(
                file_path,
                folder=folder,
                use_filename=True,
                unique_filename=False,
                overwrite=False,
                resource_type="image",
            )
        except (cloudinary.exceptions.Error, OSError) as e:
            logger.error("Failed: %s: %s", rel, e)
            continue

        url_map[rel] = result["secure_url"]
        uploaded.append((rel, result["secure_url"]))
        logger.info("Uploaded: %s -> %s", rel, result["secure_url"])

    save_url_map(url_map, map_file)
    return uploaded
