import logging
import os
import sys
import time

import urllib3

import cf_api
from reconcile import run_cycle

# Environment variables
ACCOUNT_ID = os.getenv("ACCOUNT_ID") or None
ZONE_ID = os.getenv("ZONE_ID") or None
API_TOKEN = os.getenv("API_TOKEN") or None
VERIFY_HTTPS = ((os.getenv("VERIFY_HTTPS") or "true").lower() == "true")
# Seconds between two reconciliation cycles
CLOCK = int(os.getenv("CLOCK") or "300")
# Run a single cycle and exit, for cron-style scheduling
RUN_ONCE = ((os.getenv("RUN_ONCE") or "false").lower() == "true")
# Concurrent WARP address lookups
RESOLVE_WORKERS = int(os.getenv("RESOLVE_WORKERS") or "4")


def run_once() -> int:
    """Run a single cycle. Returns 0 on success, 1 if the cycle aborted, 2 if any record failed."""
    try:
        report = run_cycle(ACCOUNT_ID, ZONE_ID, cf_api, workers=RESOLVE_WORKERS)
    except cf_api.CloudflareError as ex:
        logging.error(f"Reconciliation cycle aborted: {ex}")
        return 1
    return 2 if report.failed else 0


def run():
    if not VERIFY_HTTPS:
        urllib3.disable_warnings()

    if RUN_ONCE:
        return run_once()

    while True:
        run_once()
        time.sleep(CLOCK)


def verify_env() -> bool:
    if not ACCOUNT_ID: return False
    if not ZONE_ID: return False
    if not API_TOKEN: return False
    return True


if __name__ == "__main__":
    logging.basicConfig(format="%(asctime)s %(levelname)s %(message)s")
    logging.getLogger().setLevel(os.getenv("LOG_LEVEL", "INFO"))
    logging.info("loading environment...")

    if not verify_env():
        logging.error("ACCOUNT_ID, ZONE_ID and API_TOKEN must be set")
        sys.exit(1)

    logging.info("Starting WARP DNS sync...")
    logging.info("CLOUDFLARE_API_URL: {}".format(cf_api.CLOUDFLARE_API_URL))
    logging.info("ZONE_ID: {}".format(ZONE_ID))
    logging.info("VERIFY_HTTPS: {}".format(VERIFY_HTTPS))
    logging.info("RUN_ONCE: {}".format(RUN_ONCE))
    sys.exit(run())
