# src/infrastructure/config.py

import os

from dotenv import load_dotenv

load_dotenv()


DB_CONNECT_MAX_RETRIES = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
DB_CONNECT_RETRY_DELAY = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "eur")
CHECKOUT_SUCCESS_URL = os.getenv(
    "CHECKOUT_SUCCESS_URL",
    "http://localhost:3000/booking/success?session_id={CHECKOUT_SESSION_ID}",
)
CHECKOUT_CANCEL_URL = os.getenv(
    "CHECKOUT_CANCEL_URL",
    "http://localhost:3000/booking?canceled=true",
)

# Stripe refuses Checkout Sessions that expire in less than 30 minutes.
HOLD_TTL_SECONDS = int(os.getenv("HOLD_TTL_SECONDS", "1800"))
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))

# Slot times entered by staff are local to the competition venue.
EVENT_TIMEZONE = os.getenv("EVENT_TIMEZONE", "Europe/Paris")


def stripe_secret_key() -> str | None:
    return os.getenv("STRIPE_SECRET_KEY")


def stripe_webhook_secret() -> str | None:
    return os.getenv("STRIPE_WEBHOOK_SECRET")
