"""Fakes shared by the test modules."""

import json
from datetime import date, datetime, timedelta
from typing import Optional
from urllib.parse import parse_qs

import httpx

BASE_URL = "https://squash.test"
BOT_TOKEN = "123:abc"


def render_matrix(courts: dict[int, str], rows: list[tuple[str, str, dict[int, str]]]) -> str:
    """
    Build a reservation matrix page.

    rows holds (start time, utc token, court id -> space separated cell state).
    """
    headers = "".join(
        f'<th class="header-name r-{court_id}">{name}</th>' for court_id, name in courts.items()
    )
    body = ""
    for start_time, utc, cells in rows:
        tds = "".join(
            f'<td class="slot r-{court_id} {state}"></td>' for court_id, state in cells.items()
        )
        body += f'<tr data-time="{start_time}" utc="{utc}"><th>{start_time}</th>{tds}</tr>'
    return (
        "<html><body><table class='matrix'>"
        f"<thead class='matrix-header'><tr><th></th>{headers}</tr></thead>"
        f"<tbody>{body}</tbody></table></body></html>"
    )


BOOKING_FORM = """
<form method="post" action="/reservations/confirm">
  <input type="hidden" name="_token" value="{token}">
  <input type="hidden" name="resource_id" value="{court_id}">
  <select name="players[1]"><option value="1" selected>Me</option></select>
  <select name="players[2]"><option value="">-</option><option value="7">Other</option></select>
</form>
"""

CONFIRM_FORM = """
<form method="post" action="/reservations/confirm">
  <input type="hidden" name="_token" value="confirm-token">
  <input type="hidden" name="resource_id" value="{court_id}">
</form>
"""


class FakeSite:
    """In-memory stand-in for the booking site and the Telegram Bot API."""

    def __init__(self):
        self.pages: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.telegram_messages: list[dict] = []
        self.login_status = 302
        self.login_cookies = ["session=abc123; Path=/; HttpOnly"]
        self.form_token: Optional[str] = "form-token"
        self.final_status = 200
        self.final_body = json.dumps({"id": 4242})
        self.session_expired = False
        self.failing_dates: set[str] = set()

    def set_page(self, for_date: date, html: str) -> None:
        self.pages[for_date.isoformat()] = html

    def posts_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST" and r.url.path == path]

    def form(self, request: httpx.Request) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.host == "api.telegram.org":
            self.telegram_messages.append(json.loads(request.content))
            return httpx.Response(
                200, json={"ok": True, "result": {"message_id": len(self.telegram_messages)}}
            )

        path = request.url.path
        if path == "/auth/login":
            if request.method == "GET":
                return httpx.Response(200, text="<form id='login'></form>")
            return httpx.Response(
                self.login_status,
                headers=[("set-cookie", c) for c in self.login_cookies],
            )

        if self.session_expired:
            return httpx.Response(302, headers={"location": f"{BASE_URL}/auth/login"})

        if path.startswith("/reservations/make/"):
            court_id = path.split("/")[3]
            if self.form_token is None:
                return httpx.Response(200, text="<form><input type='hidden' name='x' value='1'></form>")
            return httpx.Response(
                200, text=BOOKING_FORM.format(token=self.form_token, court_id=court_id)
            )

        if path == "/reservations/confirm":
            if request.method == "GET":
                return httpx.Response(200, text=CONFIRM_FORM.format(court_id=51))
            if self.form(request).get("confirmed") == "1":
                return httpx.Response(self.final_status, text=self.final_body)
            return httpx.Response(302, headers={"location": "/reservations/confirm?step=2"})

        if path.startswith("/reservations/"):
            day = path.split("/")[2]
            if day in self.failing_dates:
                return httpx.Response(500, text="boom")
            return httpx.Response(200, text=self.pages.get(day, render_matrix({51: "Court 1"}, [])))

        return httpx.Response(404)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

