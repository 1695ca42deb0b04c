#!/usr/bin/env python3
"""
Smoke check for a running FileFlow server.
Exercises every endpoint once and prints a summary.

    python api_smoke_check.py [BASE_URL]
"""

import sys
from io import BytesIO

import requests

BASE_URL = sys.argv[1].rstrip("/") if len(sys.argv) > 1 else "http://localhost:3000"
results = []


class CheckResult:
    def __init__(self, endpoint, method, status, message):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message

    def __str__(self):
        status_symbol = "✓" if self.status == "PASS" else "✗"
        return f"[{status_symbol}] {self.method} {self.endpoint}: {self.message}"


def log_check(endpoint, method, passed, message):
    result = CheckResult(endpoint, method, "PASS" if passed else "FAIL", message)
    results.append(result)
    print(result)


def check_health():
    response = requests.get(f"{BASE_URL}/health", timeout=5)
    log_check("/health", "GET", response.status_code == 200, f"status={response.json().get('status')}")


def check_index():
    response = requests.get(f"{BASE_URL}/", timeout=5)
    log_check("/", "GET", response.status_code == 200, f"{len(response.content)} bytes")


def check_upload_rejects_empty_request():
    response = requests.post(f"{BASE_URL}/api/upload", data={"note": "empty"}, timeout=10)
    log_check("/api/upload", "POST", response.status_code == 400, f"empty upload -> {response.status_code}")


def check_upload_and_collision():
    uploaded = []
    for content in (b"first copy", b"second copy"):
        response = requests.post(
            f"{BASE_URL}/api/upload",
            files={"files": ("smoke-check.txt", BytesIO(content), "text/plain")},
            timeout=30,
        )
        if response.status_code != 200:
            log_check("/api/upload", "POST", False, f"unexpected status {response.status_code}")
            return []
        uploaded.append(response.json()["files"][-1])

    names = [entry["filename"] for entry in uploaded]
    distinct = names[0] != names[1] and "(" in names[1]
    log_check("/api/upload", "POST", distinct, f"stored as {names}")
    return uploaded


def check_download(entry):
    response = requests.get(f"{BASE_URL}{entry['path']}", timeout=30)
    log_check(entry["path"], "GET", response.status_code == 200, f"{len(response.content)} bytes")


def check_listing(expected_ids):
    response = requests.get(f"{BASE_URL}/api/files", timeout=5)
    listed = {entry["id"] for entry in response.json()}
    log_check("/api/files", "GET", set(expected_ids) <= listed, f"{len(listed)} file(s) listed")


def check_delete(entry):
    response = requests.delete(f"{BASE_URL}/api/file/{entry['id']}", timeout=5)
    log_check(f"/api/file/{entry['id']}", "DELETE", response.status_code == 200, response.json().get("message", ""))


def check_delete_unknown():
    response = requests.delete(f"{BASE_URL}/api/file/does-not-exist", timeout=5)
    log_check("/api/file/does-not-exist", "DELETE", response.status_code == 404, f"status={response.status_code}")


def main():
    print(f"Checking FileFlow at {BASE_URL}")
    try:
        check_health()
        check_index()
        check_upload_rejects_empty_request()
        uploaded = check_upload_and_collision()
        for entry in uploaded:
            check_download(entry)
        check_listing([entry["id"] for entry in uploaded])
        for entry in uploaded:
            check_delete(entry)
        check_delete_unknown()
    except requests.RequestException as error:
        log_check(BASE_URL, "-", False, f"server unreachable: {error}")

    failed = [result for result in results if result.status != "PASS"]
    print(f"\n{len(results) - len(failed)}/{len(results)} checks passed")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
