#!/usr/bin/env python3
"""Smoke-check a running deployment: order creation, status lookup and webhook handling.

A signed webhook is only sent when ``--notifier-private-key-file`` points at the
PEM whose public half is deployed as ZENOS_PUBLIC_KEY (staging setups).
"""
import argparse
import dataclasses
import sys
import time
from pathlib import Path

import httpx

from topup.utils.signing import build_string_to_sign, canonical_json, load_private_key, sign, unix_timestamp


@dataclasses.dataclass
class CheckResult:
    name: str
    passed: bool
    detail: str


def make_order(no_wa: str) -> dict:
    return {"total_diamond": 10, "total_amount": 3000, "no_wa": no_wa, "target_id": 1}


def get_status(client: httpx.Client, base_url: str, reference: str, no_wa: str) -> httpx.Response:
    return client.get(
        f"{base_url}/api/transactions/status",
        params={"merchant_transaction_id": reference, "no_wa": no_wa},
    )


def run_health_check(client: httpx.Client, base_url: str) -> CheckResult:
    try:
        resp = client.get(f"{base_url}/")
        if resp.status_code != 200:
            return CheckResult("Health Check", False, f"Expected 200, got {resp.status_code}")
        if resp.json().get("status") != "HEALTHY":
            return CheckResult("Health Check", False, f"Expected HEALTHY, got {resp.json().get('status')!r}")
        return CheckResult("Health Check", True, "Health check endpoint working correctly")
    except httpx.HTTPError as exc:
        return CheckResult("Health Check", False, f"Exception: {exc}")


def run_create(client: httpx.Client, base_url: str, no_wa: str) -> tuple[CheckResult, str | None]:
    try:
        resp = client.post(f"{base_url}/api/transactions", json=make_order(no_wa))
        if resp.status_code != 201:
            return CheckResult("Create Transaction", False, f"Expected 201, got {resp.status_code}"), None
        body = resp.json()
        if body.get("status") != "pending":
            return CheckResult("Create Transaction", False, f"Expected pending, got {body.get('status')!r}"), None
        reference = body["merchant_transaction_id"]
        return CheckResult("Create Transaction", True, f"Created {reference}"), reference
    except httpx.HTTPError as exc:
        return CheckResult("Create Transaction", False, f"Exception: {exc}"), None


def run_ownership_isolation(client: httpx.Client, base_url: str, reference: str, no_wa: str) -> CheckResult:
    try:
        own = get_status(client, base_url, reference, no_wa)
        foreign = get_status(client, base_url, reference, no_wa + "0")
        if own.status_code != 200:
            return CheckResult("Ownership Isolation", False, f"Owner lookup returned {own.status_code}")
        if foreign.status_code != 404:
            return CheckResult("Ownership Isolation", False, f"Foreign lookup returned {foreign.status_code}")
        return CheckResult("Ownership Isolation", True, "Foreign contact cannot see the transaction")
    except httpx.HTTPError as exc:
        return CheckResult("Ownership Isolation", False, f"Exception: {exc}")


def run_unsigned_webhook(client: httpx.Client, base_url: str, reference: str, no_wa: str) -> CheckResult:
    try:
        resp = client.post(
            f"{base_url}/api/transactions/webhook/zenospay",
            json={"merchant_transaction_id": reference, "status": "success"},
            headers={"X-SIGNATURE": "bm90LWEtc2lnbmF0dXJl", "X-TIMESTAMP": unix_timestamp()},
        )
        if resp.status_code != 401:
            return CheckResult("Unsigned Webhook", False, f"Expected 401, got {resp.status_code}")
        status = get_status(client, base_url, reference, no_wa).json().get("status")
        if status != "pending":
            return CheckResult("Unsigned Webhook", False, f"Status changed to {status!r}")
        return CheckResult("Unsigned Webhook", True, "Forged webhook rejected, status untouched")
    except httpx.HTTPError as exc:
        return CheckResult("Unsigned Webhook", False, f"Exception: {exc}")


def run_signed_webhook(
    client: httpx.Client, base_url: str, reference: str, no_wa: str, key_file: Path, callback_path: str
) -> CheckResult:
    private_key = load_private_key(key_file.read_text())
    body = {"merchant_transaction_id": reference, "status": "success"}
    timestamp = unix_timestamp()
    headers = {
        "Content-Type": "application/json",
        "X-TIMESTAMP": timestamp,
        "X-SIGNATURE": sign(build_string_to_sign("POST", callback_path, body, timestamp), private_key),
    }
    content = canonical_json(body).encode("utf-8")
    try:
        codes = [
            client.post(f"{base_url}{callback_path}", content=content, headers=headers).status_code
            for _ in range(2)
        ]
        if codes != [200, 200]:
            return CheckResult("Signed Webhook + Replay", False, f"Expected [200, 200], got {codes}")
        status = get_status(client, base_url, reference, no_wa).json().get("status")
        if status != "success":
            return CheckResult("Signed Webhook + Replay", False, f"Expected success, got {status!r}")
        return CheckResult("Signed Webhook + Replay", True, "Webhook applied once and replay acknowledged")
    except httpx.HTTPError as exc:
        return CheckResult("Signed Webhook + Replay", False, f"Exception: {exc}")


def print_report(results: list[CheckResult], total_seconds: float) -> int:
    passed = sum(1 for r in results if r.passed)
    total = len(results)
    verdict = "PASS" if passed == total else "FAIL"
    print(f"RESULT: {verdict} ({passed} / {total} checks passed)\n")
    for res in results:
        state = "PASS" if res.passed else "FAIL"
        print(f"- {state} | {res.name}")
        print(f"  - {res.detail}")
    print(f"\nTotal time: {total_seconds:.1f}s")
    return 0 if passed == total else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Payment workflow smoke check")
    parser.add_argument("--base-url", default="http://localhost:8000", help="Base URL of API")
    parser.add_argument("--request-timeout-seconds", type=float, default=10.0, help="HTTP request timeout")
    parser.add_argument("--no-wa", default="080000000000", help="Contact number used for the test order")
    parser.add_argument("--notifier-private-key-file", type=Path, help="PEM used to sign a real webhook")
    parser.add_argument(
        "--callback-path", default="/api/transactions/webhook/zenospay", help="Configured ZENOS_WEBHOOK_ENDPOINT"
    )
    args = parser.parse_args()
    base_url = args.base_url.rstrip("/")

    started = time.perf_counter()
    with httpx.Client(timeout=args.request_timeout_seconds) as client:
        results = [run_health_check(client, base_url)]
        created, reference = run_create(client, base_url, args.no_wa)
        results.append(created)
        if reference is not None:
            results.append(run_ownership_isolation(client, base_url, reference, args.no_wa))
            results.append(run_unsigned_webhook(client, base_url, reference, args.no_wa))
            if args.notifier_private_key_file is not None:
                results.append(
                    run_signed_webhook(
                        client,
                        base_url,
                        reference,
                        args.no_wa,
                        args.notifier_private_key_file,
                        args.callback_path,
                    )
                )
    return print_report(results, time.perf_counter() - started)


if __name__ == "__main__":
    sys.exit(main())
