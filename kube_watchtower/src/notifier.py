from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol
from urllib.parse import parse_qs, urlencode, urlsplit

import apprise
import requests

from kube_watchtower.src.models import UpdateOutcome

LOGGER = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    """The notification service did not accept the message."""


class Transport(Protocol):
    def send(self, url: str, message: str) -> None: ...


def webhook_format(url: str) -> str:
    """Pick a payload shape from the webhook host."""
    host = (urlsplit(url).hostname or "").lower()
    path = urlsplit(url).path
    if host in {"discord.com", "discordapp.com"} and "/api/webhooks" in path:
        return "discord"
    if host == "hooks.slack.com":
        return "slack"
    if host == "api.telegram.org":
        return "telegram"
    return "generic"


def service_type(url: str) -> str:
    scheme, separator, _ = url.partition("://")
    return scheme.lower() if separator else "unknown"


class WebhookTransport:
    """Delivers a plain-text message to an HTTP(S) webhook as JSON."""

    def __init__(self, timeout_seconds: float = 30.0, session: requests.Session | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @staticmethod
    def payload(url: str, message: str) -> dict[str, str]:
        kind = webhook_format(url)
        if kind == "discord":
            return {"content": message}
        if kind == "slack":
            return {"text": message}
        if kind == "telegram":
            chat_id = parse_qs(urlsplit(url).query).get("chat_id", [""])[0]
            if not chat_id:
                raise ValueError("telegram webhook URL has no chat_id query parameter")
            return {"chat_id": chat_id, "text": message}
        return {"text": message, "content": message, "message": message}

    def send(self, url: str, message: str) -> None:
        scheme = urlsplit(url).scheme.lower()
        if scheme not in {"http", "https"}:
            raise ValueError(f"unsupported notification scheme {scheme!r}")
        response = self.session.post(
            url,
            json=self.payload(url, message),
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()


def _split_userinfo(rest: str) -> tuple[str, str]:
    userinfo, _, host_part = rest.rpartition("@")
    return userinfo, host_part


def shoutrrr_to_apprise(url: str) -> str:
    """Rewrite a shoutrrr service URL into the form apprise expects.

    Telegram, Discord, Slack webhook and SMTP URLs differ between the two;
    every other scheme is passed through unchanged.
    """
    scheme, separator, rest = url.partition("://")
    if not separator:
        return url
    scheme = scheme.lower()
    address, _, query = rest.partition("?")
    params = parse_qs(query)

    if scheme == "telegram":
        token, _ = _split_userinfo(address)
        chats = [c for value in params.get("chats", []) for c in value.split(",") if c]
        return "tgram://" + "/".join([token.rstrip("/"), *chats])

    if scheme == "discord":
        token, webhook_id = _split_userinfo(address)
        if not token:
            return url
        return f"discord://{webhook_id.strip('/')}/{token}"

    if scheme == "slack":
        userinfo, host = _split_userinfo(address)
        if host.strip("/") == "webhook" and userinfo.startswith("hook:"):
            return "slack://" + "/".join(userinfo[len("hook:") :].split("-", 2))
        return url

    if scheme == "smtp":
        userinfo, host = _split_userinfo(address.rstrip("/"))
        hostname = host.partition(":")[0]
        target = "mailtos" if host.endswith(":465") else "mailto"
        query_out: dict[str, str] = {"smtp": hostname}
        if params.get("fromAddress"):
            query_out["from"] = params["fromAddress"][0]
        if params.get("toAddresses"):
            query_out["to"] = params["toAddresses"][0]
        credentials = f"{userinfo}@" if userinfo else ""
        return f"{target}://{credentials}{host}?{urlencode(query_out, safe='@,')}"

    return url


class AppriseTransport:
    """Delivers a message to a chat or mail service through apprise."""

    def __init__(self, title: str = "kube-watchtower") -> None:
        self.title = title

    def send(self, url: str, message: str) -> None:
        notifier = apprise.Apprise()
        if not notifier.add(shoutrrr_to_apprise(url)):
            raise ValueError(
                f"unsupported notification URL for service {service_type(url)!r}"
            )
        if not notifier.notify(body=message, title=self.title):
            raise NotificationError(f"{service_type(url)} did not accept the notification")


class ServiceTransport:
    """Routes HTTP(S) URLs to a plain webhook and service URLs to apprise."""

    def __init__(
        self,
        webhook: Transport | None = None,
        services: Transport | None = None,
    ) -> None:
        self.webhook = webhook or WebhookTransport()
        self.services = services or AppriseTransport()

    def send(self, url: str, message: str) -> None:
        if urlsplit(url).scheme.lower() in {"http", "https"}:
            self.webhook.send(url, message)
        else:
            self.services.send(url, message)


def build_summary_message(
    cluster_name: str, outcomes: Iterable[UpdateOutcome], scanned: int
) -> str:
    """Render the end-of-cycle summary.

    Example::

        ☸️ kube-watchtower updates on prod

        ✅ Updated successfully:
        - nginx:latest

        ❌ Failed to update:
        - redis:7: timeout waiting for rollout

        Updated: 1/2
    """
    succeeded: list[str] = []
    failed: list[str] = []
    for outcome in outcomes:
        if outcome.success:
            succeeded.append(outcome.image)
        elif outcome.error:
            failed.append(f"{outcome.image}: {outcome.error}")
        else:
            failed.append(outcome.image)

    lines = [f"☸️ kube-watchtower updates on {cluster_name}", ""]
    if succeeded:
        lines.append("✅ Updated successfully:")
        lines.extend(f"- {image}" for image in succeeded)
        lines.append("")
    if failed:
        lines.append("❌ Failed to update:")
        lines.extend(f"- {entry}" for entry in failed)
        lines.append("")
    lines.append(f"Updated: {len(succeeded)}/{scanned}")
    return "\n".join(lines)


class NotificationReporter:
    """Sends one summary message per cycle, when anything was attempted.

    Disabled when no destination URL is configured. Delivery failures are
    logged and never propagate into the cycle.
    """

    def __init__(
        self,
        url: str | None,
        cluster_name: str = "kubernetes",
        transport: Transport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.url = url
        self.cluster_name = cluster_name
        self.transport = transport or ServiceTransport()
        self.logger = logger or LOGGER
        if self.enabled:
            self.logger.info("Using notifications: %s", service_type(url or ""))

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def report(self, outcomes: list[UpdateOutcome], scanned: int) -> bool:
        """Send the summary for one cycle. Returns True when a message was delivered."""
        if not self.enabled or not outcomes:
            return False

        message = build_summary_message(self.cluster_name, outcomes, scanned)
        try:
            self.transport.send(self.url or "", message)
        except (requests.RequestException, NotificationError, ValueError) as exc:
            self.logger.warning("Failed to send notification: %s", exc)
            return False
        return True
