"""
This module encapsulates the reading and processing of the config file
/etc/rdpforge.yaml and provides callers with a mechanism to access the
various properties specified therein.
"""

import os
import sys

import yaml

# Read/validate the configuration file
# Check for system config first (security), then fall back to development config
if os.name == "nt":  # Windows
    CONFIG_PATH = r"C:\ProgramData\RDPForge\rdpforge.yaml"
else:  # Unix-like (Linux, macOS, BSD)
    CONFIG_PATH = "/etc/rdpforge.yaml"

# Fallback to development config if system config doesn't exist
# Check for rdpforge-dev.yaml first (user's local config), then .example
if not os.path.exists(CONFIG_PATH):
    if os.path.exists("rdpforge-dev.yaml"):
        CONFIG_PATH = "rdpforge-dev.yaml"
    elif os.path.exists("rdpforge-dev.yaml.example"):
        CONFIG_PATH = "rdpforge-dev.yaml.example"

DEFAULT_SUPPORTED_OS = [
    {"name": "ubuntu", "version": "20"},
    {"name": "ubuntu", "version": "22"},
    {"name": "debian", "version": "12"},
]

DEFAULT_REGIONS = {
    "asia": "https://asia-files.example.com",
    "australia": "https://au-files.example.com",
    "global": "https://global-files.example.com",
}


def _section(cfg, name):
    if not isinstance(cfg.get(name), dict):
        cfg[name] = {}
    return cfg[name]


try:
    config = {}
    if os.path.exists(CONFIG_PATH):
        with open(CONFIG_PATH, "r", encoding="utf-8") as file:
            config = yaml.safe_load(file) or {}

    api = _section(config, "api")
    if not "host" in api.keys():
        api["host"] = "localhost"
    if not "port" in api.keys():
        api["port"] = 8443
    if not "public_url" in api.keys():
        api["public_url"] = f"http://{api['host']}:{api['port']}"

    webui = _section(config, "webui")
    if not "host" in webui.keys():
        webui["host"] = "localhost"
    if not "port" in webui.keys():
        webui["port"] = 8080

    database = _section(config, "database")
    if not "user" in database.keys():
        database["user"] = "sqlite"
    if not "password" in database.keys():
        database["password"] = ""  # nosec B105 - empty default
    if not "host" in database.keys():
        database["host"] = ""
    if not "port" in database.keys():
        database["port"] = 5432
    if not "name" in database.keys():
        database["name"] = "rdpforge.db"

    security = _section(config, "security")
    if not "jwt_secret" in security.keys():
        security["jwt_secret"] = ""  # nosec B105 - must be set in the config file
    if not "jwt_algorithm" in security.keys():
        security["jwt_algorithm"] = "HS256"
    if not "jwt_auth_timeout" in security.keys():
        security["jwt_auth_timeout"] = 3600
    if not "download_secret" in security.keys():
        security["download_secret"] = security["jwt_secret"]

    # Logging settings
    logging_cfg = _section(config, "logging")
    if not "level" in logging_cfg.keys():
        logging_cfg["level"] = "INFO|WARNING|ERROR|CRITICAL"
    if not "format" in logging_cfg.keys():
        logging_cfg["format"] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Remote provisioning settings
    install = _section(config, "install")
    if not "tcp_probe_timeout" in install.keys():
        install["tcp_probe_timeout"] = 7
    if not "ssh_timeout" in install.keys():
        install["ssh_timeout"] = 15
    if not "os_check_timeout" in install.keys():
        install["os_check_timeout"] = 10
    if not "dispatch_timeout" in install.keys():
        install["dispatch_timeout"] = 30
    if not "ssh_username" in install.keys():
        install["ssh_username"] = "root"
    if not "rdp_password_min_length" in install.keys():
        install["rdp_password_min_length"] = 4
    if not "supported_os" in install.keys():
        install["supported_os"] = DEFAULT_SUPPORTED_OS
    if not "script_template" in install.keys():
        install["script_template"] = None
    if not "process_name" in install.keys():
        install["process_name"] = "[kworker/u8:3-events]"
    if not "image_filename" in install.keys():
        install["image_filename"] = "{slug}.gz"
    if not "config_filename" in install.keys():
        install["config_filename"] = "{slug}.cfg.gz"

    # Install monitoring settings
    monitoring = _section(config, "monitoring")
    if not "poll_interval" in monitoring.keys():
        monitoring["poll_interval"] = 15
    if not "stall_timeout_minutes" in monitoring.keys():
        monitoring["stall_timeout_minutes"] = 3
    if not "running_dwell_minutes" in monitoring.keys():
        monitoring["running_dwell_minutes"] = 4
    if not "manual_review_minutes" in monitoring.keys():
        monitoring["manual_review_minutes"] = 15
    if not "supervision_window_minutes" in monitoring.keys():
        monitoring["supervision_window_minutes"] = 30
    if not "rdp_port" in monitoring.keys():
        monitoring["rdp_port"] = 3389
    if not "rdp_probe_timeout" in monitoring.keys():
        monitoring["rdp_probe_timeout"] = 5

    # Protected download settings
    download = _section(config, "download")
    if not "signature_ttl_seconds" in download.keys():
        download["signature_ttl_seconds"] = 360
    if not "decoy_segment" in download.keys():
        download["decoy_segment"] = "c3RvcmUuYXJjaGl2ZS5taXJyb3IuY2FjaGUuZ3o"
    if not "regions" in download.keys():
        download["regions"] = dict(DEFAULT_REGIONS)
    if not "default_region" in download.keys():
        download["default_region"] = "global"
    if not "allowed_user_agents" in download.keys():
        download["allowed_user_agents"] = ["curl", "wget"]
    if not "blocked_user_agents" in download.keys():
        download["blocked_user_agents"] = (
            "bot|crawler|spider|scraper|facebook|twitter|linkedin"
        )
    if not "preparing_agents" in download.keys():
        download["preparing_agents"] = ["curl"]
    if not "running_agents" in download.keys():
        download["running_agents"] = ["wget"]
    if not "allowed_extension" in download.keys():
        download["allowed_extension"] = ".gz"

    geoip = _section(config, "geoip")
    if not "enabled" in geoip.keys():
        geoip["enabled"] = False
    if not "url" in geoip.keys():
        geoip["url"] = "https://ipapi.co/{ip}/country/"
    if not "timeout" in geoip.keys():
        geoip["timeout"] = 3

    obfuscation = _section(config, "obfuscation")
    if not "mode" in obfuscation.keys():
        obfuscation["mode"] = "builtin"
    if not "tool" in obfuscation.keys():
        obfuscation["tool"] = "bash-obfuscate"
    if not "args" in obfuscation.keys():
        obfuscation["args"] = ["{input}", "-o", "{output}"]
    if not "timeout" in obfuscation.keys():
        obfuscation["timeout"] = 30

    # Email settings
    email = _section(config, "email")
    if not "enabled" in email.keys():
        email["enabled"] = False
    smtp = _section(email, "smtp")
    if not "host" in smtp.keys():
        smtp["host"] = "localhost"
    if not "port" in smtp.keys():
        smtp["port"] = 587
    if not "use_tls" in smtp.keys():
        smtp["use_tls"] = True
    if not "use_ssl" in smtp.keys():
        smtp["use_ssl"] = False
    if not "username" in smtp.keys():
        smtp["username"] = ""
    if not "password" in smtp.keys():
        smtp["password"] = ""  # nosec B105 - empty default, not a hardcoded password
    if not "timeout" in smtp.keys():
        smtp["timeout"] = 30
    if not "from_address" in email.keys():
        email["from_address"] = "noreply@localhost"
    if not "from_name" in email.keys():
        email["from_name"] = "RDPForge"
    templates = _section(email, "templates")
    if not "subject_prefix" in templates.keys():
        templates["subject_prefix"] = "[RDPForge]"
except yaml.YAMLError as exc:
    if hasattr(exc, "problem_mark"):
        mark = exc.problem_mark
        print(
            f"Error reading {CONFIG_PATH} on line {mark.line + 1} "
            f"in column {mark.column + 1}",
            file=sys.stderr,
        )
    sys.exit(1)


def get_config():
    """
    This function allows a caller to retrieve the config object.
    """
    return config


def get_public_url():
    """
    Get the externally reachable base URL used in download and callback links.
    """
    return config["api"]["public_url"].rstrip("/")


def get_log_levels():
    """
    Get the pipe-separated logging levels configuration.
    """
    return config["logging"]["level"]


def get_log_format():
    """
    Get the logging format string.
    """
    return config["logging"]["format"]


def get_log_file():
    """
    Get the log file path if specified.
    """
    return config["logging"].get("file")


def get_download_secret():
    """
    Get the HMAC secret used to sign download links.
    """
    return config["security"]["download_secret"]


def get_install_config():
    """
    Get the remote provisioning settings (timeouts, OS allow-list, template).
    """
    return config["install"]


def get_monitoring_config():
    """
    Get the install monitoring thresholds.
    """
    return config["monitoring"]


def get_download_config():
    """
    Get the protected download settings.
    """
    return config["download"]


def get_geoip_config():
    """
    Get the geo-routing lookup settings.
    """
    return config["geoip"]


def get_obfuscation_config():
    """
    Get the payload obfuscation settings.
    """
    return config["obfuscation"]


def get_email_config():
    """
    Get the complete email configuration.
    """
    return config["email"]


def is_email_enabled():
    """
    Check if email functionality is enabled.
    """
    return config["email"]["enabled"]


def get_smtp_config():
    """
    Get SMTP server configuration.
    """
    return config["email"]["smtp"]
