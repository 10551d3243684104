"""Export search engine cookies from a manual browser session.

Usage:
    .venv/bin/python scripts/extract_cookies.py [--output config/cookies.json]

Opens a Chromium window on the search engine. Accept the consent banner (and
sign in if the sessions should carry an account), then press Enter in the
terminal. Cookies for the search engine's domains are saved to the cookie file
every journey session loads.
"""

import argparse
import json
from pathlib import Path

from patchright.sync_api import sync_playwright

DEFAULT_OUTPUT = Path("config/cookies.json")
START_URL = "https://www.google.com/?gl=us&hl=en"
COOKIE_DOMAINS = ("google.com", "youtube.com")


def keep_cookie(cookie: dict) -> bool:
    domain = cookie.get("domain", "").lstrip(".")
    return any(domain == d or domain.endswith(f".{d}") for d in COOKIE_DOMAINS)


def main() -> None:
    parser = argparse.ArgumentParser(description="Export search engine cookies")
    parser.add_argument("--output", type=Path, default=DEFAULT_OUTPUT)
    parser.add_argument("--url", default=START_URL)
    args = parser.parse_args()

    with sync_playwright() as p:
        browser = p.chromium.launch(headless=False)
        context = browser.new_context()
        page = context.new_page()
        page.goto(args.url)

        input("\n>>> Accept the consent banner / sign in, then press Enter to save cookies...")

        cookies = [c for c in context.cookies() if keep_cookie(c)]
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(cookies, indent=2))
        print(f"Saved {len(cookies)} cookies to {args.output}")

        browser.close()


if __name__ == "__main__":
    main()
