"""One-off migration: push the static images under public/ to Cloudinary.

Already uploaded files are remembered in the URL map, so re-running only
uploads what is new.
"""

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

import cloudinary_hosting
from config_store import DEFAULT_FOLDER, ENV_PATH, ROOT

logger = logging.getLogger("upload_static_images")

REQUIRED_ENV = ("CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET")


def missing_env(environ):
    return [name for name in REQUIRED_ENV if not environ.get(name)]


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Upload static images to Cloudinary")
    parser.add_argument("--public-dir", default=str(ROOT / "public"))
    parser.add_argument("--map", dest="map_file", default=None,
                        help="URL map file (default: CLOUDINARY_MAP_PATH or config/cloudinary_urls.json)")
    parser.add_argument("--folder", default=DEFAULT_FOLDER)
    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"), format="%(message)s")
    load_dotenv(ENV_PATH)
    args = parse_args(argv)

    missing = missing_env(os.environ)
    if missing:
        logger.error("Missing env vars: %s. Check your .env.", ", ".join(missing))
        return 1

    if not os.path.isdir(args.public_dir):
        logger.error("Public directory not found: %s", args.public_dir)
        return 1

    cloudinary_hosting.configure(cloudinary_hosting.cloudinary_settings({}, os.environ))
    map_file = args.map_file or str(cloudinary_hosting.map_path())
    uploaded = cloudinary_hosting.upload_static_images(args.public_dir, map_file, args.folder)

    logger.info("Done. %d new images uploaded.", len(uploaded))
    logger.info("Mapping saved to: %s", map_file)
    return 0


if __name__ == "__main__":
    sys.exit(main())
