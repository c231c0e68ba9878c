#!/usr/bin/env python3
"""
Route Contract Checker

Exercises the todo list server against the route contract in routes.yml: for every route, in contract order,
missing fields, the session gate, rejected inputs and the full request are checked.
Provides output digestible for humans and CI/automation.

Usage:
    python check_routes.py [options]

Options:
    --server-url URL     Connect to existing server, including its PATH_PREFIX (default: auto-start)
    --contract PATH      Route contract path (default: routes.yml next to this script)
    --format {text,json,markdown}  Output format (default: text)
    --strict             Treat warnings as errors
    --port PORT          Port for auto-started server (default: random available)
    --slow-ms MS         Report responses slower than this as info (default: 500)
"""

import argparse
import json
import secrets
import socket
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Callable
from unittest import TestCase

import httpx
import yaml


# Severity levels
CRITICAL = "critical"
WARNING = "warning"
INFO = "info"

DEFAULT_CONTRACT_PATH = Path(__file__).resolve().parent / "routes.yml"


class Difference:
    """One way the server strays from the contract."""

    def __init__(self, severity: str, category: str, path: str, message: str, expected: Any = None, actual: Any = None):
        self.severity = severity
        self.category = category
        self.path = path
        self.message = message
        self.expected = expected
        self.actual = actual

    def to_dict(self) -> dict:
        result = {"severity": self.severity, "category": self.category, "path": self.path, "message": self.message}
        for key, value in (("expected", self.expected), ("actual", self.actual)):
            if value is not None:
                result[key] = value
        return result

    def describe(self) -> str:
        if self.expected is None:
            return f"{self.message} for {self.path}"
        return f"{self.message} for {self.path} (expected: {self.expected}, actual: {self.actual})"


def find_available_port() -> int:
    """Find a random available port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def render(value: Any, context: dict) -> Any:
    """Fill `{user}` style placeholders in every string of a contract value."""
    if isinstance(value, str):
        return value.format(**context)
    if isinstance(value, dict):
        return {key: render(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, context) for item in value]
    return value


def send(client: httpx.Client, route: dict, body: dict) -> httpx.Response:
    """Send a route request, the body goes as JSON unless the route is a form."""
    method = route["method"].upper()
    if method == "GET":
        return client.request(method, route["path"])
    if route.get("form"):
        return client.request(method, route["path"], data=body)
    return client.request(method, route["path"], json=body)


def check_route(
    client: httpx.Client,
    new_client: Callable[[], httpx.Client],
    route: dict,
    context: dict,
    slow_ms: int = 500,
) -> list[Difference]:
    """Check a single contract route, `client` holds the session of the checking user."""
    differences = []
    method = route["method"].upper()
    label = f"{method} {route['path']}"
    fields = render(route.get("fields") or {}, context)

    def expect_status(response: httpx.Response, status: int, severity: str, category: str, message: str) -> bool:
        if response.status_code == status:
            return True
        differences.append(
            Difference(
                severity=severity,
                category=category,
                path=label,
                message=message,
                expected=status,
                actual=response.status_code,
            )
        )
        return False

    # Every required field, once missing
    for field in fields:
        body = {name: value for name, value in fields.items() if name != field}
        response = send(client, route, body)
        expect_status(response, 400, CRITICAL, "missing_field", f"Missing field '{field}' is not rejected")

    # Session gate
    if route.get("auth"):
        with new_client() as anonymous_client:
            response = send(anonymous_client, route, fields)
        expect_status(response, 401, CRITICAL, "session_gate", "Route is reachable without a session")

    # Rejected inputs
    for override in render(route.get("rejects") or [], context):
        response = send(client, route, {**fields, **override})
        expect_status(response, 406, WARNING, "rejected_input", f"Input {override} is not rejected")

    # Full request, public routes get a client of their own so that the checking session is kept
    started_at = time.perf_counter()
    if route.get("auth"):
        response = send(client, route, fields)
    else:
        with new_client() as public_client:
            response = send(public_client, route, fields)
    elapsed_ms = (time.perf_counter() - started_at) * 1000
    if expect_status(response, route["status"], CRITICAL, "status", "Unexpected status") and "json" in route:
        expected_json = render(route["json"], context)
        try:
            actual_json = response.json()
        except ValueError:
            actual_json = response.text
        if actual_json != expected_json:
            differences.append(
                Difference(
                    severity=WARNING,
                    category="response_body",
                    path=label,
                    message="Unexpected response body",
                    expected=expected_json,
                    actual=actual_json,
                )
            )

    if elapsed_ms > slow_ms:
        differences.append(
            Difference(
                severity=INFO,
                category="slow_response",
                path=label,
                message=f"Slow response ({elapsed_ms:.0f} ms)",
                actual=round(elapsed_ms),
            )
        )

    return differences


def check_contract(contract: dict, new_client: Callable[[], httpx.Client], slow_ms: int = 500) -> list[Difference]:
    """Sign up a fresh user, then check every contract route in order."""
    context = {
        "user": f"check{secrets.token_hex(4)}",
        "new_user": f"check{secrets.token_hex(4)}",
        "password": secrets.token_hex(8),
    }
    session_cookie = contract.get("session_cookie", "_SID")
    with new_client() as client:
        response = client.post("/signUp", data={"userName": context["user"], "password": context["password"]})
        if response.status_code != 302 or session_cookie not in client.cookies:
            return [
                Difference(
                    severity=CRITICAL,
                    category="sign_up",
                    path="POST /signUp",
                    message="Could not sign up the checking user",
                    expected=302,
                    actual=response.status_code,
                )
            ]
        differences = []
        for route in contract.get("routes", []):
            differences.extend(check_route(client, new_client, route, context, slow_ms))
    return differences


def summarize(differences: list[Difference]) -> dict[str, int]:
    """Count differences per severity."""
    counts = {CRITICAL: 0, WARNING: 0, INFO: 0}
    for d in differences:
        counts[d.severity] += 1
    return counts


def by_severity(differences: list[Difference], severity: str) -> list[Difference]:
    return [d for d in differences if d.severity == severity]


def is_passed(differences: list[Difference], strict: bool = False) -> bool:
    counts = summarize(differences)
    return counts[CRITICAL] == 0 and not (strict and counts[WARNING])


def format_text(differences: list[Difference], passed: bool) -> str:
    """Format differences as plain text, one line per difference."""
    counts = summarize(differences)
    lines = [
        "Route Contract Check",
        "====================",
        f"Status: {'PASSED' if passed else 'FAILED'}",
        f"Critical: {counts[CRITICAL]} | Warnings: {counts[WARNING]} | Info: {counts[INFO]}",
        "",
    ]
    for severity, title in ((CRITICAL, "CRITICAL:"), (WARNING, "WARNINGS:"), (INFO, "INFO:")):
        selected = by_severity(differences, severity)
        if selected:
            lines.append(title)
            lines.extend(f"[{severity[0].upper()}] {d.describe()}" for d in selected)
            lines.append("")
    return "\n".join(lines)


def format_json(differences: list[Difference], passed: bool) -> str:
    """Format differences as JSON."""
    report = {
        "passed": passed,
        "summary": summarize(differences),
        "differences": [d.to_dict() for d in differences],
    }
    return json.dumps(report, indent=2)


def format_markdown(differences: list[Difference], passed: bool) -> str:
    """Format differences as Markdown, a section per failing route check."""
    counts = summarize(differences)
    lines = [
        "# Route Contract Report",
        "",
        f"**{'PASSED' if passed else 'FAILED'}**: "
        f"{counts[CRITICAL]} critical, {counts[WARNING]} warnings, {counts[INFO]} info",
        "",
    ]
    for severity, title in ((CRITICAL, "## Critical Issues"), (WARNING, "## Warnings")):
        selected = by_severity(differences, severity)
        if not selected:
            continue
        lines.extend([title, ""])
        for d in selected:
            lines.append(f"### {d.path}: {d.category.replace('_', ' ')}")
            lines.append(d.message)
            if d.expected is not None:
                lines.append(f"- expected `{json.dumps(d.expected)}`, got `{json.dumps(d.actual)}`")
            lines.append("")
    notes = by_severity(differences, INFO)
    if notes:
        lines.extend(["## Info", "", *(f"- {d.path}: {d.message}" for d in notes), ""])
    return "\n".join(lines)


def load_contract(path: Path) -> dict:
    """Load the route contract from YAML file."""
    if not path.exists():
        print(f"Error: Route contract not found at {path}", file=sys.stderr)
        sys.exit(2)

    with open(path) as f:
        return yaml.safe_load(f)


def start_server(port: int, data_dir: str) -> subprocess.Popen:
    """Start the todo list server with throwaway data files and return the process."""
    import os

    full_env = os.environ.copy()
    full_env.update(
        {
            "PATH_PREFIX": "",
            "USERS_FILE_PATH": str(Path(data_dir) / "users.json"),
            "TODO_LISTS_FILE_PATH": str(Path(data_dir) / "todoLists.json"),
        }
    )

    process = subprocess.Popen(
        [sys.executable, str(Path(__file__).resolve().parent / "todo_server.py"), str(port)],
        env=full_env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return process


def wait_for_server(url: str, timeout: int = 30) -> bool:
    """Wait for server to be ready."""
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            response = httpx.get(url, timeout=2)
            if response.status_code in (200, 302, 404):
                return True
        except httpx.HTTPError:
            pass
        time.sleep(0.5)
    return False


def main():
    parser = argparse.ArgumentParser(description="Check the todo list server against its route contract")
    parser.add_argument(
        "--server-url",
        help="Server base URL including its PATH_PREFIX, e.g., http://127.0.0.1:8000 (default: auto-start)",
    )
    parser.add_argument(
        "--contract",
        type=Path,
        default=DEFAULT_CONTRACT_PATH,
        help="Route contract path (default: routes.yml next to this script)",
    )
    parser.add_argument(
        "--format",
        choices=["text", "json", "markdown"],
        default="text",
        help="Output format (default: text)",
    )
    parser.add_argument("--strict", action="store_true", help="Treat warnings as errors")
    parser.add_argument("--port", type=int, help="Port for auto-started server (default: random available)")
    parser.add_argument("--slow-ms", type=int, default=500, help="Report slower responses as info (default: 500)")

    args = parser.parse_args()

    contract = load_contract(args.contract)

    server_process = None
    data_dir = tempfile.TemporaryDirectory()
    try:
        if args.server_url:
            base_url = args.server_url.rstrip("/")
        else:
            port = args.port or find_available_port()
            server_process = start_server(port, data_dir.name)
            base_url = f"http://127.0.0.1:{port}"

            if not wait_for_server(f"{base_url}/"):
                print("Error: Server failed to start within timeout", file=sys.stderr)
                sys.exit(2)

        try:
            differences = check_contract(
                contract, lambda: httpx.Client(base_url=base_url, timeout=30), slow_ms=args.slow_ms
            )
        except httpx.HTTPError as e:
            print(f"Error talking to the server: {e}", file=sys.stderr)
            sys.exit(2)

        passed = is_passed(differences, args.strict)

        # Format output
        if args.format == "json":
            output = format_json(differences, passed)
        elif args.format == "markdown":
            output = format_markdown(differences, passed)
        else:
            output = format_text(differences, passed)

        print(output)

        # Exit code: 0=pass, 1=critical issues
        sys.exit(0 if passed else 1)

    finally:
        if server_process:
            server_process.terminate()
            try:
                server_process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                server_process.kill()
        data_dir.cleanup()


if __name__ == "__main__":
    main()


#### TESTS #############################################################################################################


def lenient_handler(request: httpx.Request) -> httpx.Response:
    """A server answering 200 to anything"""
    return httpx.Response(200, json=[])


class TestCheckContract(TestCase):
    def setUp(self):
        from todo_server import AppState, DataStore, SessionStore, TodoHandler, UserDirectory

        self.app = TodoHandler(AppState(SessionStore(), UserDirectory(), {}, DataStore()))
        self.contract = load_contract(DEFAULT_CONTRACT_PATH)

    def _new_client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.WSGITransport(app=self.app), base_url="http://testserver")

    def test_server_matches_contract(self):
        differences = check_contract(self.contract, self._new_client, slow_ms=60_000)
        self.assertEqual([d.to_dict() for d in differences], [])
        self.assertTrue(is_passed(differences, strict=True))

    def test_sign_up_failure_stops_the_check(self):
        def new_client():
            return httpx.Client(transport=httpx.MockTransport(lenient_handler), base_url="http://testserver")

        differences = check_contract(self.contract, new_client)
        self.assertEqual([(d.severity, d.category, d.actual) for d in differences], [(CRITICAL, "sign_up", 200)])
        self.assertFalse(is_passed(differences))

    def test_lenient_server_is_reported(self):
        def new_client():
            return httpx.Client(transport=httpx.MockTransport(lenient_handler), base_url="http://testserver")

        route = {
            "method": "POST",
            "path": "/user/addTodo",
            "auth": True,
            "fields": {"todoTitle": "{user}"},
            "rejects": [{"todoTitle": ""}],
            "status": 200,
            "json": [{"title": "{user}", "id": "0", "tasks": []}],
        }
        with new_client() as client:
            differences = check_route(client, new_client, route, {"user": "alice"})
        self.assertEqual(
            [(d.severity, d.category) for d in differences],
            [
                (CRITICAL, "missing_field"),
                (CRITICAL, "session_gate"),
                (WARNING, "rejected_input"),
                (WARNING, "response_body"),
            ],
        )
        self.assertEqual(differences[-1].expected, [{"title": "alice", "id": "0", "tasks": []}])
        self.assertTrue(is_passed(differences[2:]))
        self.assertFalse(is_passed(differences[2:], strict=True))

    def test_formats(self):
        differences = [
            Difference(CRITICAL, "status", "GET /user/todoList", "Unexpected status", expected=200, actual=500),
            Difference(INFO, "slow_response", "POST /signUp", "Slow response (900 ms)", actual=900),
        ]
        text = format_text(differences, passed=False)
        self.assertIn("Status: FAILED", text)
        self.assertIn("[C] Unexpected status for GET /user/todoList (expected: 200, actual: 500)", text)
        self.assertIn("[I] Slow response (900 ms) for POST /signUp", text)
        report = json.loads(format_json(differences, passed=False))
        self.assertEqual(report["summary"], {"critical": 1, "warning": 0, "info": 1})
        self.assertEqual(report["differences"][1], differences[1].to_dict())
        markdown = format_markdown(differences, passed=False)
        self.assertIn("**FAILED**: 1 critical, 0 warnings, 1 info", markdown)
        self.assertIn("### GET /user/todoList: status", markdown)
        self.assertIn("- expected `200`, got `500`", markdown)
        self.assertIn("- POST /signUp: Slow response (900 ms)", markdown)

    def test_summary_counts_every_severity(self):
        differences = [Difference(WARNING, "rejected_input", "POST /login", "Input is not rejected")] * 2
        self.assertEqual(summarize(differences), {CRITICAL: 0, WARNING: 2, INFO: 0})
        self.assertEqual(summarize([]), {CRITICAL: 0, WARNING: 0, INFO: 0})

    def test_slow_response_is_timed_on_prebuilt_responses(self):
        def new_client():
            return httpx.Client(transport=httpx.MockTransport(lenient_handler), base_url="http://testserver")

        route = {"method": "GET", "path": "/", "status": 200}
        with new_client() as client:
            differences = check_route(client, new_client, route, {}, slow_ms=-1)
        self.assertEqual([(d.severity, d.category, d.path) for d in differences], [(INFO, "slow_response", "GET /")])
        self.assertGreaterEqual(differences[0].actual, 0)
