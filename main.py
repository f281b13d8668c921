"""
Sheet Relay — Entry Point

Usage:
    python main.py set-link "https://docs.google.com/forms/d/e/.../viewform?usp=pp_url&entry.1=..."
    python main.py test-link
    python main.py submit "MATH 126" --threshold 3.8 --percentage 42.5 --score 1.1
    python main.py status
    python main.py serve                      # HTTP front (no browser tabs)
    python main.py browser --start-url URL    # Playwright browser with window.sheetRelay()
    python main.py --config path/to/config.yaml <command>
"""

import argparse
import json
import sys

from playwright.sync_api import sync_playwright

from sheet_relay.broker import build_broker
from sheet_relay.broker_server import create_app, expose_broker
from sheet_relay.coordinator import PlaywrightTabTransport
from sheet_relay.storage import KEY_ENTRY_IDS, KEY_ENTRY_IDS_BASE
from sheet_relay.utils import load_config, setup_logging


def _print_result(result: dict) -> int:
    print(json.dumps(result, indent=2, ensure_ascii=False))
    ok = result.get("ok", False) and result.get("formOk", True) is not False
    return 0 if ok else 1


# ── Commands ─────────────────────────────────────────────────────────────

def cmd_set_link(args, config, logger) -> int:
    broker = build_broker(config)
    return _print_result(broker.handle({"type": "setFormLink", "formUrl": args.url}))


def cmd_test_link(args, config, logger) -> int:
    broker = build_broker(config)
    url = args.url or broker.form_url()
    return _print_result(broker.handle({"type": "testLink", "formUrl": url}))


def cmd_submit(args, config, logger) -> int:
    broker = build_broker(config)
    check = broker.handle({"type": "checkAlreadyRecorded", "label": args.label})
    if check.get("added") and not args.force:
        logger.warning(
            f"{args.label} is already in your sheet. Adding again will make it show up twice "
            f"— pass --force to add it anyway."
        )
        return 1

    threshold = args.threshold if args.threshold is not None else broker.threshold()
    return _print_result(broker.handle({
        "type":       "submitRecord",
        "label":      args.label,
        "threshold":  threshold,
        "percentage": args.percentage,
        "score":      args.score,
    }))


def cmd_status(args, config, logger) -> int:
    broker = build_broker(config)
    store = broker.store
    logger.info("Relay status:")
    logger.info(f"  Form link:        {broker.form_url() or '(not set)'}")
    logger.info(f"  Threshold:        {broker.threshold()}")
    logger.info(f"  Entry ids:        {store.get(KEY_ENTRY_IDS) or '(not resolved)'}")
    logger.info(f"  Resolved against: {store.get(KEY_ENTRY_IDS_BASE) or '-'}")
    added = broker.added_records.all()
    logger.info(f"  Added records:    {len(added)}")
    for label in added:
        logger.info(f"    - {label}")
    pending = broker.coordinator.pending()
    logger.info(f"  Pending workers:  {len(pending)}")
    for worker_id, entry in pending.items():
        logger.info(f"    - {worker_id}: {entry.get('label')!r} (origin {entry.get('origin_id')})")
    return 0


def cmd_serve(args, config, logger) -> int:
    broker = build_broker(config)
    app = create_app(broker)
    host = args.host or config["server_host"]
    port = args.port or config["server_port"]

    logger.info("=" * 60)
    logger.info(f"  Broker HTTP front running on {host}:{port}")
    logger.info("  No browser attached — openWorker requests report ok=false")
    logger.info("=" * 60)
    app.run(host=host, port=port, threaded=True, use_reloader=False)
    return 0


def cmd_browser(args, config, logger) -> int:
    is_headless = config["headless"]

    with sync_playwright() as p:
        browser = p.chromium.launch(headless=bool(is_headless))
        try:
            context = browser.new_context()
            transport = PlaywrightTabTransport(
                context,
                poll_interval=config["worker_poll_interval"],
                wait_timeout=config["worker_wait_timeout"],
            )
            broker = build_broker(config, transport)
            expose_broker(context, broker, transport)

            page = context.new_page()
            transport.register(page)
            if args.start_url:
                page.goto(args.start_url, wait_until="domcontentloaded")
            logger.info("Browser ready — close every tab (or Ctrl+C) to stop.")

            transport.pump()
        except KeyboardInterrupt:
            logger.info("Interrupted — shutting down browser")
        finally:
            browser.close()
    return 0


COMMANDS = {
    "set-link":  cmd_set_link,
    "test-link": cmd_test_link,
    "submit":    cmd_submit,
    "status":    cmd_status,
    "serve":     cmd_serve,
    "browser":   cmd_browser,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Append scraped records to a Google Form-backed sheet"
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.yaml (default: ./config.yaml)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_link = sub.add_parser("set-link", help="Save the form link (clears cached entry ids)")
    p_link.add_argument("url", help="Form share link or pre-filled link; empty string clears it")

    p_test = sub.add_parser("test-link", help="Check that a form link resolves to 4 fields")
    p_test.add_argument("url", nargs="?", default=None, help="Link to test (default: saved link)")

    p_submit = sub.add_parser("submit", help="Add one record to the sheet")
    p_submit.add_argument("label", help="Record label, e.g. 'MATH 126'")
    p_submit.add_argument("--threshold", type=float, default=None,
                          help="Threshold value (default: saved threshold)")
    p_submit.add_argument("--percentage", type=float, default=None)
    p_submit.add_argument("--score", type=float, default=None)
    p_submit.add_argument("--force", action="store_true",
                          help="Submit even if this label was already added")

    sub.add_parser("status", help="Show settings, cached entry ids, added records and pending workers")

    p_serve = sub.add_parser("serve", help="Run the broker HTTP front")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)

    p_browser = sub.add_parser("browser", help="Run a Playwright browser wired to the broker")
    p_browser.add_argument("--start-url", default=None, help="Page to open in the first tab")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    # ── Setup ────────────────────────────────────────────────────────
    logger = setup_logging()
    config = load_config(args.config)

    return COMMANDS[args.command](args, config, logger)


if __name__ == "__main__":
    sys.exit(main())
