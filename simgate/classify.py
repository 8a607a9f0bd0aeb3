#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp

from simgate import utils

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
SPAM_MODEL = utils.get_secret("SPAM_MODEL") or "claude-3-haiku-20240307"
CLASSIFY_TIMEOUT = 15

GOOGLE_CODE = re.compile(r"g-\d{6}", re.IGNORECASE)
PROVIDERS = (
    "gmail",
    "microsoft",
    "yahoo",
    "outlook",
    "ticketmaster",
    "stubhub",
    "seatgeek",
    "vivid seats",
    "axs",
    "mlb",
)


def is_verification_code(content: Optional[str]) -> bool:
    """OTPs from providers we care about. These never go near the spam filter."""
    if not content:
        return False
    if GOOGLE_CODE.search(content):
        return True
    text = content.lower()
    if "google" in text and ("code" in text or "verification" in text):
        return True
    return any(provider in text for provider in PROVIDERS)


@dataclass
class SpamVerdict:
    spam: bool
    category: Optional[str] = None
    confidence: str = "low"
    error: Optional[str] = None


NOT_SPAM = SpamVerdict(spam=False)

SPAM_PROMPT = """You classify SMS received by a ticket brokerage.
Allow a message unless it clearly belongs to a spam category.

Spam: non-English text; retail, fashion, wig and beauty promotions; diet, CBD and
pharmacy marketing; adult or dating content; crypto; employer shift alerts;
weather alerts; debt collection, loans, insurance and tax relief offers;
package and delivery notifications; appointment reminders; political campaigns;
warranty, legal, real estate, home service and job solicitations; prizes;
payment app, travel, food delivery and gym promotions; fake bank alerts;
automated opt-out confirmations.

Always allow: short conversational messages, anything that reads like a person
talking, questions and answers, ticket, seat, event and venue messages, and
verification codes from any source.

Answer with JSON only:
{"spam": true/false, "category": "category name or null", "confidence": "high/medium/low"}"""


class SpamClassifier:
    """Says nothing is spam. Used when no classifier is configured."""

    async def classify(self, content: str, sender: str) -> SpamVerdict:
        return NOT_SPAM


def parse_verdict(text: str) -> SpamVerdict:
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise ValueError(f"no JSON in classifier reply: {text[:100]}")
    result: dict[str, Any] = json.loads(match.group())
    return SpamVerdict(
        spam=result.get("spam") is True,
        category=result.get("category") or None,
        confidence=result.get("confidence") or "low",
    )


class AnthropicClassifier(SpamClassifier):
    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        model: str = SPAM_MODEL,
        url: str = ANTHROPIC_URL,
    ) -> None:
        self.session = session
        self.api_key = api_key
        self.model = model
        self.url = url

    async def classify(self, content: str, sender: str) -> SpamVerdict:
        """Fails open: any error is logged and the message let through"""
        body = {
            "model": self.model,
            "max_tokens": 100,
            "system": SPAM_PROMPT,
            "messages": [
                {"role": "user", "content": f"Message from {sender}:\n{content}"}
            ],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        try:
            async with self.session.post(
                self.url,
                json=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=CLASSIFY_TIMEOUT),
            ) as resp:
                resp.raise_for_status()
                reply = await resp.json()
            verdict = parse_verdict(reply["content"][0]["text"])
        except (
            aiohttp.ClientError,
            asyncio.TimeoutError,
            KeyError,
            IndexError,
            TypeError,
            ValueError,
        ) as e:
            logging.error("spam classification failed, letting message through: %r", e)
            return SpamVerdict(spam=False, error=str(e))
        logging.info(
            "spam filter: %s spam=%s category=%s confidence=%s",
            sender,
            verdict.spam,
            verdict.category,
            verdict.confidence,
        )
        return verdict
