#!/usr/bin/env python3
"""Parcel Tracker — Application Runner.

Performs pre-flight checks and launches the main application.

Usage:
    python scripts/run.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

BANNER = r"""
╔══════════════════════════════════════════════════════════╗
║                                                          ║
║                  📦  Parcel Tracker v1.0                 ║
║          Shipment status alerts on Telegram & HTTP       ║
║                                                          ║
╚══════════════════════════════════════════════════════════╝
"""

REQUIRED_FILES = [
    "config/settings.yaml",
]


def _telegram_enabled() -> bool:
    return os.environ.get("TELEGRAM_ENABLED", "true").strip().lower() in ("1", "true", "yes", "on")


def preflight_checks() -> bool:
    """Run pre-flight checks before starting the application.

    Checks:
      - .env file exists (optional when variables come from the shell)
      - TELEGRAM_BOT_TOKEN is set unless Telegram is disabled
      - Required config files exist
      - data/ and logs/ directories exist (creates them)

    Returns:
        True if all checks pass, False otherwise.
    """
    os.chdir(str(PROJECT_ROOT))
    ok = True

    env_path = PROJECT_ROOT / ".env"
    if not env_path.exists():
        print("⚠️  .env file not found, using the shell environment")
        print("   Copy .env.example to .env to configure the bot token.")
    else:
        from dotenv import load_dotenv
        load_dotenv(env_path)
        print("✅ .env loaded")

    if _telegram_enabled():
        token = os.environ.get("TELEGRAM_BOT_TOKEN", "")
        if not token or token in ("your_token_here", "test"):
            print("❌ TELEGRAM_BOT_TOKEN not set (or set TELEGRAM_ENABLED=false)")
            ok = False
        else:
            masked = token[:6] + "..." + token[-4:] if len(token) > 10 else "***"
            print(f"✅ TELEGRAM_BOT_TOKEN = {masked}")
    else:
        print("⚠️  Telegram disabled: notifications will only be logged")

    render = os.environ.get("RENDER_SERVICE_URL", "")
    if render:
        print(f"✅ RENDER_SERVICE_URL = {render}")
    else:
        print("⚠️  RENDER_SERVICE_URL not set (rendered-page fallback disabled)")

    for f in REQUIRED_FILES:
        path = PROJECT_ROOT / f
        if not path.exists():
            print(f"❌ {f} not found!")
            ok = False
        else:
            print(f"✅ {f} exists")

    for d in ("data", "logs"):
        (PROJECT_ROOT / d).mkdir(exist_ok=True)
        print(f"✅ {d}/ directory ready")

    return ok


def main() -> None:
    """Entry point: run checks then start the application."""
    print(BANNER)

    print("═══ Pre-flight Checks ═══\n")
    if not preflight_checks():
        print("\n❌ Pre-flight checks failed! Fix the issues above and try again.")
        sys.exit(1)

    print("\n✅ All checks passed!\n")
    print("═══ Starting Parcel Tracker ═══\n")

    from src.main import main as app_main
    app_main()


if __name__ == "__main__":
    main()
