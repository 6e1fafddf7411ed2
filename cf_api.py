import logging
import os
from datetime import datetime, timezone

import requests

from reconcile import ApiError, DeviceObservation, DnsRecord

CLOUDFLARE_API_URL = (os.getenv("CLOUDFLARE_API_URL") or "https://api.cloudflare.com/client/v4").rstrip("/")
API_TOKEN = os.getenv("API_TOKEN") or None
VERIFY_HTTPS = ((os.getenv("VERIFY_HTTPS") or "true").lower() == "true")
HTTP_TIMEOUT = int(os.getenv("HTTP_TIMEOUT") or "30")
PAGE_SIZE = int(os.getenv("PAGE_SIZE") or "100")


class CloudflareError(ApiError):
    pass


def cloudflare_call(method: str, path: str, params: dict | None = None, json: dict | None = None):
    """Small helper to call the Cloudflare v4 API."""
    url = f"{CLOUDFLARE_API_URL}{path}"
    headers = {"Authorization": f"Bearer {API_TOKEN}"}
    return requests.request(
        method,
        url=url,
        params=params,
        json=json,
        headers=headers,
        verify=VERIFY_HTTPS,
        timeout=HTTP_TIMEOUT,
    )


def cloudflare_request(method: str, path: str, params: dict | None = None, json: dict | None = None,
                       *, action: str = "Cloudflare request") -> tuple[bool, dict]:
    """Call the Cloudflare API and validate both HTTP and JSON status.

    Returns: (ok, payload)
    - ok is True only when HTTP is 2xx AND JSON has {"success": true}
    - payload is {} on parse failures

    Transport failures (DNS, TLS, timeouts) raise CloudflareError.
    """
    try:
        r = cloudflare_call(method, path, params=params, json=json)
    except requests.RequestException as ex:
        raise CloudflareError(f"{action} failed: {ex}") from ex

    try:
        payload = r.json() or {}
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    if not 200 <= r.status_code < 300:
        logging.error(f"{action} failed (HTTP {r.status_code}): {error_messages(payload) or r.text}")
        return False, payload

    if payload.get("success") is True:
        return True, payload

    logging.error(f"{action} failed (success={payload.get('success')}): {error_messages(payload)}")
    return False, payload


def error_messages(payload: dict) -> str:
    errors = payload.get("errors")
    if not isinstance(errors, list):
        return ""
    messages = []
    for e in errors:
        if isinstance(e, dict):
            messages.append(f"{e.get('code')}: {e.get('message')}")
        else:
            messages.append(str(e))
    return "; ".join(messages)


def cloudflare_paginate(path: str, params: dict | None = None, *, action: str = "Cloudflare listing"):
    """Yield every item of a paginated listing.

    Cloudflare uses page numbers (result_info.page / total_pages) on most
    endpoints and an opaque cursor (result_info.cursor) on newer ones.
    """
    params = dict(params or {})
    params.setdefault("per_page", PAGE_SIZE)
    page = 1

    while True:
        query = dict(params)
        if "cursor" not in query:
            query["page"] = page

        ok, payload = cloudflare_request("GET", path, params=query, action=f"{action} (page {page})")
        if not ok:
            raise CloudflareError(f"{action} failed: {error_messages(payload) or 'unsuccessful response'}")

        items = payload.get("result") or []
        yield from items

        info = payload.get("result_info") or {}
        cursor = info.get("cursor")
        if cursor:
            if not items or cursor == params.get("cursor"):
                return
            params["cursor"] = cursor
        elif not items or page >= int(info.get("total_pages") or 1):
            return
        page += 1


def parse_timestamp(value) -> datetime:
    if not isinstance(value, str) or not value:
        raise ValueError(f"missing timestamp: {value!r}")
    # fromisoformat only accepts a trailing Z from Python 3.11 on
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def list_devices(account_id: str):
    """Lazily yield the Zero Trust devices of an account.

    Entries with an unparseable timestamp are skipped, not the whole listing.
    """
    for d in cloudflare_paginate(f"/accounts/{account_id}/devices/physical-devices",
                                 action="List devices"):
        if not isinstance(d, dict) or not d.get("id"):
            logging.warning(f"Ignoring malformed device entry: {d}")
            continue
        try:
            updated = parse_timestamp(d.get("updated_at") or d.get("last_seen_at"))
        except ValueError as ex:
            logging.warning(f"Skipping device {d['id']} ({d.get('name')}): {ex}")
            continue
        yield DeviceObservation(id=d["id"], name=str(d.get("name") or ""), updated=updated)


def get_warp_ip(account_id: str, device_id: str) -> str | None:
    """Returns a device's WARP CGNAT IPv4 address, or None when unknown."""
    ok, payload = cloudflare_request("GET", f"/accounts/{account_id}/warp/{device_id}",
                                     action=f"Get WARP address of {device_id}")
    if not ok:
        return None

    result = payload.get("result")
    metadata = result.get("metadata") if isinstance(result, dict) else None
    if not isinstance(metadata, dict) or not metadata:
        logging.info(f"{device_id} has empty metadata block")
        return None

    ip = metadata.get("ipv4")
    if not isinstance(ip, str) or not ip:
        return None
    return ip


def get_zone_name(zone_id: str) -> str:
    ok, payload = cloudflare_request("GET", f"/zones/{zone_id}", action=f"Get zone {zone_id}")
    name = (payload.get("result") or {}).get("name") if ok else None
    if not name:
        raise CloudflareError(f"Could not determine the name of zone {zone_id}")
    return name


def list_dns_records(zone_id: str):
    for r in cloudflare_paginate(f"/zones/{zone_id}/dns_records", params={"type": "A"},
                                 action="List DNS records"):
        yield DnsRecord(id=r["id"], name=r.get("name") or "", content=r.get("content") or "")


def create_record(zone_id: str, name: str, record_type: str, content: str, ttl: int) -> str | None:
    ok, payload = cloudflare_request(
        "POST",
        f"/zones/{zone_id}/dns_records",
        json={"name": name, "type": record_type, "content": content, "ttl": ttl},
        action=f"Create {record_type} {name} => {content}",
    )
    if not ok:
        raise CloudflareError(f"Create {record_type} {name} failed: {error_messages(payload) or 'unsuccessful response'}")
    return (payload.get("result") or {}).get("id")


def update_record(zone_id: str, record_id: str, name: str, record_type: str, content: str, ttl: int) -> None:
    ok, payload = cloudflare_request(
        "PUT",
        f"/zones/{zone_id}/dns_records/{record_id}",
        json={"name": name, "type": record_type, "content": content, "ttl": ttl},
        action=f"Update {record_type} {name} => {content}",
    )
    if not ok:
        raise CloudflareError(f"Update {record_type} {name} failed: {error_messages(payload) or 'unsuccessful response'}")
