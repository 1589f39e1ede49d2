import dataclasses
import logging
import os
import smtplib
import time
from email.mime.text import MIMEText
from email.utils import formataddr

import requests
from dotenv import load_dotenv
from flask import Flask, jsonify, redirect, request, send_from_directory

import cloudinary_hosting
import config_store
import tautulli

load_dotenv(config_store.ENV_PATH)

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["VERSION"] = "v0.4.0"

SMTP_TIMEOUT = 20
PLEX_TIMEOUT = 10


def read_tautulli_config(url=None, api_key=None):
    """Resolve the stored Tautulli settings, optionally overriding the URL and key.

    Overrides come from the settings modal and replace only the field they
    name; blank overrides fall back to the stored value. Environment
    variables still win.
    """
    cfg = tautulli.resolve_config(os.environ, config_store.load_config())
    if not url and not api_key:
        return cfg

    env_only = tautulli.resolve_config(os.environ, {})
    return dataclasses.replace(
        cfg,
        base_url=env_only.base_url or str(url or "").rstrip('/') or cfg.base_url,
        api_key=env_only.api_key or str(api_key or "") or cfg.api_key,
    )


def _int_arg(name, default):
    raw = request.args.get(name)
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value or default


def _command_params():
    params = request.args.to_dict()
    command = params.pop("cmd", None)
    return command, params


def _error(e, status=500):
    return jsonify({"error": str(e)}), status


@app.get('/api/tautulli', strict_slashes=False)
def tautulli_command():
    try:
        command, params = _command_params()
        if not command:
            return jsonify({"error": "Missing ?cmd="}), 400
        data = tautulli.tautulli_call(command, params, read_tautulli_config())
        return jsonify({"data": data})
    except Exception as e:
        return _error(e)


@app.get('/api/tautulli/passthrough')
def tautulli_passthrough():
    try:
        command, params = _command_params()
        if not command:
            return jsonify({"error": "Missing ?cmd="}), 400
        data = tautulli.tautulli_call(command, params, read_tautulli_config())
        return jsonify(data)
    except Exception as e:
        return _error(e)


@app.get('/api/tautulli/_debug')
def tautulli_debug():
    try:
        cfg = read_tautulli_config()
        return jsonify({"tautulli": {
            "url": cfg.base_url or None,
            "sniHost": cfg.sni_override,
            "hostHeader": cfg.host_header,
            "apiKey": tautulli.mask_api_key(cfg.api_key),
            "timeout": cfg.timeout,
        }})
    except Exception as e:
        return _error(e)


@app.get('/api/tautulli/home')
def tautulli_home():
    try:
        days = max(0, _int_arg("days", 7))
        home = tautulli.tautulli_call("get_home_stats", tautulli.home_stats_params(days), read_tautulli_config())
        return jsonify({"home": home})
    except Exception as e:
        logger.exception("GET /api/tautulli/home failed")
        return _error(e)


@app.get('/api/tautulli/summary')
def tautulli_summary():
    try:
        days = max(0, _int_arg("days", 7))
        return jsonify(tautulli.fetch_summary(read_tautulli_config(), days))
    except Exception:
        logger.exception("GET /api/tautulli/summary failed")
        return jsonify({"error": "fetch failed"}), 500


@app.get('/api/tautulli/users')
def tautulli_users():
    try:
        data = tautulli.tautulli_call("get_users", {}, read_tautulli_config())
        return jsonify({"users": tautulli.dedupe_users(data)})
    except Exception:
        logger.exception("GET /api/tautulli/users failed")
        return jsonify({"error": "fetch failed"}), 500


@app.get('/api/tautulli/recent')
def tautulli_recent():
    try:
        media_type = str(request.args.get("type") or "").lower()
        days = tautulli.clamp(_int_arg("days", 7), 1, 90)
        limit = tautulli.clamp(_int_arg("limit", 12), 1, 500)

        data = tautulli.tautulli_call("get_recently_added", {"time_range": days, "count": limit},
                                      read_tautulli_config())
        raw = data.get("recently_added") if isinstance(data, dict) else None
        rows = tautulli.recent_media(raw if isinstance(raw, list) else [], media_type=media_type,
                                     window_days=days, limit=limit, now=int(time.time()))
        return jsonify({"ok": True, "rows": rows})
    except Exception as e:
        logger.error("GET /api/tautulli/recent failed: %s", e)
        return jsonify({"ok": False, "error": str(e)})


@app.get('/api/config')
def get_config():
    return jsonify({"config": config_store.public_config(config_store.load_config())})


@app.post('/api/config')
def post_config():
    try:
        cfg = config_store.update_config(request.get_json(silent=True))
        return jsonify({"ok": True, "config": config_store.public_config(cfg)})
    except ValueError as e:
        return _error(e, 400)
    except Exception as e:
        logger.exception("Saving settings failed")
        return _error(e)


@app.post('/api/test/tautulli')
def check_tautulli():
    data = request.get_json(silent=True) or {}
    try:
        cfg = read_tautulli_config(data.get("tautulliUrl"), data.get("tautulliApiKey"))
        tautulli.tautulli_call("get_tautulli_info", {}, cfg)
        return jsonify({"ok": True})
    except Exception as e:
        return jsonify({"ok": False, "error": str(e)})


@app.post('/api/test/plex')
def check_plex():
    data = request.get_json(silent=True) or {}
    stored = config_store.load_config()
    plex_url = str(data.get("plexUrl") or stored.get("plexUrl") or "").rstrip('/')
    plex_token = data.get("plexToken") or stored.get("plexToken") or ""
    if not plex_url or not plex_token:
        return jsonify({"ok": False, "error": "Plex URL and token are required"})

    try:
        response = requests.get(
            f"{plex_url}/identity",
            headers={"Accept": "application/json", "X-Plex-Token": plex_token},
            timeout=PLEX_TIMEOUT,
            verify=False,
        )
        response.raise_for_status()
        container = response.json().get("MediaContainer", {})
        return jsonify({"ok": True, "machineIdentifier": container.get("machineIdentifier")})
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.error("Plex connection test failed: %s", e)
        return jsonify({"ok": False, "error": str(e)})


def send_test_email(smtp_server, smtp_port, smtp_encryption, login, password, from_address, to_address):
    msg = MIMEText("This is a test message from Newzlettr. Your SMTP settings work.", "plain", "utf-8")
    msg['Subject'] = "Newzlettr SMTP test"
    msg['From'] = formataddr(("Newzlettr", from_address))
    msg['To'] = to_address

    logger.info("SMTP test: %s:%s using %s", smtp_server, smtp_port, smtp_encryption)
    if smtp_encryption == "TLS/SSL":
        server = smtplib.SMTP_SSL(smtp_server, smtp_port, timeout=SMTP_TIMEOUT)
    else:
        server = smtplib.SMTP(smtp_server, smtp_port, timeout=SMTP_TIMEOUT)
    try:
        if smtp_encryption == "STARTTLS":
            server.starttls()
        if login and password:
            server.login(login, password)
        server.sendmail(from_address, [to_address], msg.as_string())
    finally:
        server.quit()


@app.post('/api/test/smtp')
def check_smtp():
    data = request.get_json(silent=True) or {}
    stored = config_store.load_config()

    smtp_server = data.get("smtpServer") or stored.get("smtpServer") or ""
    login = data.get("smtpEmailLogin") or stored.get("smtpEmailLogin") or ""
    password = data.get("smtpEmailPassword") or config_store.get_secret(stored, "smtpEmailPassword")
    encryption = data.get("smtpEncryption") or stored.get("smtpEncryption") or "TLS/SSL"
    from_address = data.get("fromAddress") or stored.get("fromAddress") or login
    to_address = data.get("to") or from_address

    try:
        smtp_port = int(data.get("smtpPort") or stored.get("smtpPort") or 587)
    except (TypeError, ValueError):
        return jsonify({"ok": False, "error": "Invalid SMTP port"})
    if encryption not in config_store.SMTP_ENCRYPTIONS:
        return jsonify({"ok": False, "error": f"Unknown encryption: {encryption}"})
    if not smtp_server or not from_address:
        return jsonify({"ok": False, "error": "SMTP server and from address are required"})

    try:
        send_test_email(smtp_server, smtp_port, encryption, login, password, from_address, to_address)
        return jsonify({"ok": True})
    except (smtplib.SMTPException, OSError) as e:
        logger.error("SMTP test failed: %s", e)
        return jsonify({"ok": False, "error": str(e)})


@app.post('/api/cloudinary/test')
def check_cloudinary():
    data = request.get_json(silent=True) or {}
    try:
        if data.get("imageHost") == "embedded":
            config_store.update_config({"imageHost": "embedded"})
            return jsonify({"ok": True})

        posted = data.get("cloudinary") if isinstance(data.get("cloudinary"), dict) else {}
        stored = config_store.load_config()
        settings = cloudinary_hosting.cloudinary_settings(stored, os.environ)
        settings.update({
            "cloud_name": posted.get("cloudName") or settings["cloud_name"],
            "api_key": posted.get("apiKey") or settings["api_key"],
            "folder": posted.get("folder") or settings["folder"],
        })
        if posted.get("apiSecret") and posted["apiSecret"] != config_store.SECRET_MASK:
            settings["api_secret"] = posted["apiSecret"]

        cloudinary_hosting.check_connection(settings)
        config_store.update_config({"imageHost": "cloudinary", "cloudinary": posted}, stored)
        return jsonify({"ok": True})
    except Exception as e:
        logger.error("Cloudinary test failed: %s", e)
        return jsonify({"ok": False, "error": str(e)})


@app.post('/api/cloudinary/clear')
def cloudinary_clear():
    data = request.get_json(silent=True) or {}
    try:
        settings = cloudinary_hosting.cloudinary_settings(config_store.load_config(), os.environ)
        deleted = cloudinary_hosting.clear_folder(settings, data.get("folder") or settings["folder"])
        return jsonify({"ok": True, "deleted": deleted})
    except Exception as e:
        logger.error("Cloudinary clear failed: %s", e)
        return jsonify({"ok": False, "error": str(e)})


@app.post('/api/_reload_cloudinary_map')
def reload_cloudinary_map():
    url_map = cloudinary_hosting.reload_url_map()
    return jsonify({"ok": True, "count": len(url_map)})


def public_dir():
    return os.environ.get("NEWZLETTR_PUBLIC_DIR") or str(config_store.ROOT / "public")


@app.get('/images/<path:rel>')
def static_image(rel):
    url = cloudinary_hosting.hosted_url(rel)
    if url:
        return redirect(url)
    return send_from_directory(public_dir(), rel)


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    app.run(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", 6397)),
        debug=os.environ.get("NEWZLETTR_DEBUG", "").lower() in ("1", "true", "yes"),
        threaded=True,
    )


if __name__ == '__main__':
    main()
