"""Deterministic bot and attack-signature classification.

Both rule lists are evaluated top to bottom and the first match wins, so the
order below determines the reported ``reason`` for a given request.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Pattern, Sequence, Tuple

BOT_PATTERNS: Sequence[Tuple[Pattern[str], str]] = (
    (re.compile(r"bot|crawler|spider|scraper", re.IGNORECASE), "generic_crawler"),
    (re.compile(r"googlebot|bingbot|slurp|duckduckbot|baiduspider", re.IGNORECASE), "search_engine"),
    (re.compile(r"facebookexternalhit|twitterbot|linkedinbot", re.IGNORECASE), "social"),
    # "moz" alone would match every "Mozilla/5.0" browser string.
    (re.compile(r"semrush|ahrefs|moz(?!illa)|dotbot", re.IGNORECASE), "seo_tool"),
)

SUSPICIOUS_PATTERNS: Sequence[Tuple[Pattern[str], str]] = (
    (re.compile(r"\.(php|asp|aspx|jsp|cgi|pl)$", re.IGNORECASE), "script_extension"),
    (re.compile(r"wp-admin|wp-login|wp-content|wordpress", re.IGNORECASE), "cms_probe"),
    (re.compile(r"phpmyadmin|adminer|pma", re.IGNORECASE), "db_admin_probe"),
    (re.compile(r"\.env|\.git|\.htaccess|\.aws", re.IGNORECASE), "secret_file_probe"),
    (re.compile(r"config\.json|package\.json|composer\.json", re.IGNORECASE), "config_file_probe"),
    (re.compile(r"/\.\.|%2e%2e|%252e", re.IGNORECASE), "path_traversal"),
    (re.compile(r"<script|javascript:|data:", re.IGNORECASE), "script_injection"),
    (re.compile(r"union.*select|insert.*into|drop.*table", re.IGNORECASE), "sql_injection"),
    (re.compile(r"nikto|sqlmap|nmap|masscan", re.IGNORECASE), "scanner"),
    (re.compile(r"gobuster|dirbuster|dirb|ffuf", re.IGNORECASE), "dir_bruteforce"),
)

REASON_FRAGMENT_LENGTH = 20


@dataclass(frozen=True)
class Classification:
    is_bot: bool
    is_suspicious: bool
    reason: Optional[str] = None
    category: Optional[str] = None


def is_bot(user_agent: Optional[str], is_internal: bool) -> bool:
    """Internal callers are never bots; a missing user agent always is."""

    if is_internal:
        return False
    if not user_agent:
        return True
    return any(pattern.search(user_agent) for pattern, _ in BOT_PATTERNS)


def match_suspicious(path: str, user_agent: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return ``(reason, label)`` for the first attack signature hit, if any."""

    user_agent = user_agent or ""
    for pattern, label in SUSPICIOUS_PATTERNS:
        fragment = pattern.pattern[:REASON_FRAGMENT_LENGTH]
        if pattern.search(path):
            return f"path_match:{fragment}", label
        if pattern.search(user_agent):
            return f"ua_match:{fragment}", label
    return None


def check_suspicious(path: str, user_agent: Optional[str]) -> Tuple[bool, Optional[str]]:
    match = match_suspicious(path, user_agent)
    if match is None:
        return False, None
    return True, match[0]


def classify(user_agent: Optional[str], is_internal: bool, path: str) -> Classification:
    match = match_suspicious(path, user_agent)
    return Classification(
        is_bot=is_bot(user_agent, is_internal),
        is_suspicious=match is not None,
        reason=match[0] if match else None,
        category=match[1] if match else None,
    )
