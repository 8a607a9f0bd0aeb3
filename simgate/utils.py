#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import functools
import logging
import os
import re
from typing import Optional

import phonenumbers as pn
from phonenumbers import NumberParseException


def filter_aiohttp_noise(record: logging.LogRecord) -> bool:
    str_msg = str(getattr(record, "msg", ""))
    if "was destroyed but it is pending" in str_msg:
        return False
    if str_msg.startswith("task:") and str_msg.endswith(">"):
        return False
    return True


logger = logging.getLogger()
logger.setLevel("DEBUG")
fmt = logging.Formatter("{levelname} {module}:{lineno}: {message}", style="{")
console_handler = logging.StreamHandler()
console_handler.setLevel(
    ((os.getenv("LOGLEVEL") or os.getenv("LOG_LEVEL")) or "DEBUG").upper()
)
console_handler.setFormatter(fmt)
console_handler.addFilter(filter_aiohttp_noise)
logger.addHandler(console_handler)


#### Configuration

# values come from the environment first, then from an `{ENV}_secrets` file
# of KEY=value lines; the file never overrides what's already set
def parse_secrets(secrets: str) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for line in secrets.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        parsed[key] = value
    return parsed


@functools.cache
def load_secrets(env: Optional[str] = None, overwrite: bool = False) -> None:
    env = env or os.environ.get("ENV", "dev")
    try:
        with open(f"{env}_secrets", encoding="utf-8") as secrets_file:
            secrets = parse_secrets(secrets_file.read())
    except FileNotFoundError:
        return
    logging.info("loaded %s settings from %s_secrets", len(secrets), env)
    os.environ.update(secrets if overwrite else secrets | os.environ)


def get_secret(key: str, env: Optional[str] = None) -> str:
    try:
        secret = os.environ[key]
    except KeyError:
        load_secrets(env)
        secret = os.environ.get(key) or ""
    if secret.lower() in ("0", "false", "no"):
        return ""
    return secret


def get_float(key: str, default: float) -> float:
    try:
        return float(get_secret(key) or default)
    except ValueError:
        logging.warning("%s is not a number, using %s", key, default)
        return default


## Settings

APP_NAME = os.getenv("FLY_APP_NAME")
LOCAL = APP_NAME is None
PORT = int(get_secret("PORT") or 8080)
CHAT_CHANNEL = get_secret("SLACK_CHANNEL_ID")
SPAM_CHANNEL = get_secret("SPAM_CHANNEL_ID")
VERIFICATION_CHANNEL = get_secret("VERIFICATION_CHANNEL_ID")
TEST_CHANNEL = get_secret("TEST_CHANNEL_ID")


#### Configure logging to file

if get_secret("LOGFILES") or not LOCAL:
    handler = logging.FileHandler("debug.log")
    handler.setLevel("DEBUG")
    handler.setFormatter(fmt)
    handler.addFilter(filter_aiohttp_noise)
    logger.addHandler(handler)


#### Phone numbers

MAX_E164_DIGITS = 15
MIN_DIGITS = 5


def normalize_phone(raw_number: Optional[str]) -> Optional[str]:
    """Canonical comparable form: '+' and country code and digits.
    Ten digit numbers are assumed to be US and get a leading 1.
    Returns None for anything that doesn't look like a phone number or short code."""
    if not raw_number:
        return None
    cleaned = re.sub(r"[^\d+]", "", raw_number)
    digits = cleaned.removeprefix("+")
    if not digits.isdigit():
        return None
    if len(digits) == 10:
        digits = "1" + digits
    if not MIN_DIGITS <= len(digits) <= MAX_E164_DIGITS:
        return None
    return "+" + digits


def digits_only(phone: str) -> str:
    """What the SIM bank expects: no plus, no punctuation"""
    return re.sub(r"\D", "", phone)


def ten_digits(phone: str) -> str:
    digits = digits_only(phone)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def is_short_code(phone: str) -> bool:
    return 5 <= len(digits_only(phone)) <= 6


def format_phone_display(phone: str) -> str:
    """+15551234567 -> (555) 123-4567, anything else stays E164-ish"""
    normalized = normalize_phone(phone)
    if not normalized:
        return phone
    try:
        parsed = pn.parse(normalized, None)
    except NumberParseException:
        return normalized
    if parsed.country_code == 1 and len(str(parsed.national_number)) == 10:
        return pn.format_number(parsed, pn.PhoneNumberFormat.NATIONAL)
    return normalized
