#!/usr/bin/env python3
"""Regenerate agentlogs/secret_patterns.yaml from secrets-patterns-db.

Curated patterns come first, then the upstream stable rules. Duplicate names
(case-insensitive) keep their first occurrence, and regexes Python cannot
compile are dropped.

Usage:
  python agentlogs/scripts/fetch_secret_patterns.py
  python agentlogs/scripts/fetch_secret_patterns.py --output /tmp/secret_patterns.yaml --verbose
"""
from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import requests
import yaml

from agentlogs import config
from agentlogs.redact import compile_patterns

logger = logging.getLogger("agentlogs.scripts.fetch_secret_patterns")

YAML_URL = "https://raw.githubusercontent.com/mazen160/secrets-patterns-db/master/db/rules-stable.yml"
REQUEST_TIMEOUT_SECONDS = 30

CURATED_PATTERNS: list[dict[str, str]] = [
    # AI providers
    {"name": "OpenAI API Key", "regex": r"sk-[a-zA-Z0-9]{20,}"},
    {"name": "OpenAI Project Key", "regex": r"sk-proj-[a-zA-Z0-9\-_]{20,}"},
    {"name": "Anthropic API Key", "regex": r"sk-ant-[a-zA-Z0-9\-_]{20,}"},
    {"name": "Cohere API Key", "regex": r"co-[a-zA-Z0-9]{40,}"},
    {"name": "HuggingFace Token", "regex": r"hf_[a-zA-Z0-9]{34,}"},
    {"name": "Replicate API Token", "regex": r"r8_[a-zA-Z0-9]{40}"},
    # JWT and OAuth
    {"name": "JWT Token", "regex": r"eyJ[A-Za-z0-9-_]+\.[A-Za-z0-9-_]+\.[A-Za-z0-9-_.+/=]*"},
    {"name": "OAuth Client Secret", "regex": r"""(?i)client_secret['"\s:=]+[a-zA-Z0-9\-_.~]{10,100}"""},
    {"name": "OAuth Client ID", "regex": r"""(?i)client_id['"\s:=]+[a-zA-Z0-9\-_.~]{10,100}"""},
    {"name": "Bearer Token", "regex": r"Bearer\s+[a-zA-Z0-9\-._~+/]+=*"},
    {"name": "Authorization Bearer", "regex": r"(?i)authorization:\s*Bearer\s+[a-zA-Z0-9\-._~+/]+=*"},
    {"name": "Google OAuth Access Token", "regex": r"ya29\.[0-9A-Za-z\-_]+"},
    # Source hosting
    {"name": "GitHub Fine-Grained Token", "regex": r"github_pat_[0-9a-zA-Z_]{20,}"},
    {"name": "GitHub OAuth App Secret", "regex": r"""[g|G][i|I][t|T][h|H][u|U][b|B].*['|"][0-9a-zA-Z]{35,40}['|"]"""},
    {"name": "GitLab PAT", "regex": r"glpat-[a-zA-Z0-9_-]{16,}"},
    {"name": "GitLab Runner Token", "regex": r"glrt-[a-zA-Z0-9_-]{16,}"},
    # Database URIs
    {"name": "MongoDB URI", "regex": r"""mongodb(\+srv)?:\/\/[^\s'"]+"""},
    {"name": "PostgreSQL URI", "regex": r"""postgres(?:ql)?:\/\/[^\s'"]+"""},
    {"name": "MySQL URI", "regex": r"""mysql:\/\/[^\s'"]+"""},
    {"name": "Redis URI", "regex": r"""redis:\/\/[^\s'"]+"""},
    {"name": "JDBC URL", "regex": r"""jdbc:\w+:\/\/[^\s'"]+"""},
    {"name": "Password in URL", "regex": r"""[a-zA-Z]{3,10}://[^/\s:@]{3,20}:[^/\s:@]{3,20}@.{1,100}["'\s]"""},
    # Cloud and DevOps
    {"name": "DigitalOcean Token", "regex": r"dop_v1_[a-z0-9]{64}"},
    {"name": "Vault Token", "regex": r"s\.[a-zA-Z0-9]{8,}"},
    {"name": "CircleCI Token", "regex": r"circle-token=[a-z0-9]{40}"},
    {"name": "New Relic Key", "regex": r"NRII-[a-zA-Z0-9]{20,}"},
    {"name": "Sentry DSN", "regex": r"https:\/\/[a-zA-Z0-9]+@[a-z]+\.ingest\.sentry\.io\/\d+"},
    {"name": "Cloudinary URL", "regex": r"cloudinary:\/\/[0-9]{15}:[a-zA-Z0-9]+@[a-zA-Z]+"},
    # Messaging
    {"name": "Discord Bot Token", "regex": r"[MN][A-Za-z\d]{23}\.[\w-]{6}\.[\w-]{27}"},
    {"name": "Discord Webhook", "regex": r"https:\/\/discord(?:app)?\.com\/api\/webhooks\/[0-9]+\/[a-zA-Z0-9_-]+"},
    {"name": "Telegram Bot Token", "regex": r"\d{9}:[a-zA-Z0-9_-]{35}"},
    {
        "name": "Microsoft Teams Webhook",
        "regex": r"https:\/\/[a-z]+\.webhook\.office\.com\/webhookb2\/[a-zA-Z0-9@\-]+\/.*",
    },
    # Payment
    {"name": "Stripe Publishable Key", "regex": r"pk_live_[0-9a-zA-Z]{24}"},
    {"name": "PayPal Braintree Token", "regex": r"access_token\$production\$[0-9a-z]{16}\$[0-9a-f]{32}"},
    {"name": "Square Access Token", "regex": r"sq0atp-[0-9A-Za-z\-_]{22}"},
    {"name": "Square OAuth Secret", "regex": r"sq0csp-[0-9A-Za-z\-_]{43}"},
    # Services
    {"name": "SendGrid API Key", "regex": r"SG\.[\w\d\-_]{22}\.[\w\d\-_]{43}"},
    {"name": "Mailgun API Key", "regex": r"key-[0-9a-zA-Z]{32}"},
    {"name": "MailChimp API Key", "regex": r"[0-9a-f]{32}-us[0-9]{1,2}"},
    {"name": "Shopify Access Token", "regex": r"shpat_[0-9a-fA-F]{32}"},
    {"name": "Dropbox Access Token", "regex": r"sl\.[A-Za-z0-9_-]{20,100}"},
    {"name": "Asana Token", "regex": r"0\/[0-9a-z]{32}"},
    {"name": "Linear API Key", "regex": r"lin_api_[a-zA-Z0-9]{40}"},
    {
        "name": "Riot Games API Key",
        "regex": r"RGAPI-[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}",
    },
    # Generic
    {"name": "Generic API Key", "regex": r"""(?i)(api[_-]?key)['"\s:=]+[a-zA-Z0-9\-_.]{16,}"""},
    {"name": "Generic Secret", "regex": r"""(?i)(secret|password|passwd|pwd)['"\s:=]+[^\s'"]{8,}"""},
    {"name": "Generic Token", "regex": r"""(?i)(token)['"\s:=]+[a-zA-Z0-9\-_.]{16,}"""},
    {"name": "Private Key Block", "regex": r"-----BEGIN (RSA|DSA|EC|OPENSSH|PGP)?\s*PRIVATE\s+KEY"},
    {"name": "Certificate Block", "regex": r"-----BEGIN CERTIFICATE-----"},
]


def fetch_upstream_patterns(url: str = YAML_URL) -> list[dict[str, str]]:
    response = requests.get(url, timeout=REQUEST_TIMEOUT_SECONDS)
    response.raise_for_status()
    payload = yaml.safe_load(response.text) or {}
    patterns: list[dict[str, str]] = []
    for entry in payload.get("patterns") or []:
        pattern = entry.get("pattern") if isinstance(entry, dict) else None
        if not isinstance(pattern, dict):
            continue
        name = pattern.get("name")
        regex = pattern.get("regex")
        if isinstance(name, str) and isinstance(regex, str):
            patterns.append({"name": name, "regex": regex})
    logger.info("Parsed %d patterns from secrets-patterns-db", len(patterns))
    return patterns


def merge_patterns(*groups: list[dict[str, str]]) -> list[dict[str, str]]:
    """Concatenate groups, keeping the first pattern for each lowercase name."""
    seen: set[str] = set()
    merged: list[dict[str, str]] = []
    for group in groups:
        for pattern in group:
            key = pattern["name"].lower()
            if key in seen:
                continue
            seen.add(key)
            merged.append(pattern)
    return merged


def render_patterns(patterns: list[dict[str, str]]) -> str:
    header = (
        "# Generated by agentlogs/scripts/fetch_secret_patterns.py\n"
        f"# Source: {YAML_URL}\n"
        f"# Generated: {datetime.now(timezone.utc).isoformat()}\n"
        f"# Total patterns: {len(patterns)}\n"
    )
    body = yaml.dump(
        {"patterns": patterns},
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
        width=4096,
    )
    return header + body


def build_pattern_list(upstream: list[dict[str, str]]) -> list[dict[str, Any]]:
    merged = merge_patterns(CURATED_PATTERNS, upstream)
    valid = compile_patterns(merged).patterns
    dropped = len(merged) - len(valid)
    if dropped:
        logger.warning("Dropped %d patterns that do not compile as Python regexes", dropped)
    return [pattern.model_dump() for pattern in valid]


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--output", default=str(config.SECRET_PATTERNS_PATH), help="Where to write the YAML file")
    parser.add_argument("--url", default=YAML_URL, help="secrets-patterns-db rules URL")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        upstream = fetch_upstream_patterns(args.url)
    except requests.RequestException as exc:
        logger.error("Failed to fetch %s: %s", args.url, exc)
        return 1

    patterns = build_pattern_list(upstream)
    output = Path(args.output)
    output.write_text(render_patterns(patterns), encoding="utf-8")
    logger.info("Wrote %d patterns (%d curated) to %s", len(patterns), len(CURATED_PATTERNS), output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
