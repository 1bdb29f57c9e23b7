"""Browser collaborators for terminal use."""

from __future__ import annotations

import logging
import webbrowser
from collections.abc import Callable

import click

logger = logging.getLogger(__name__)


class ConsoleBrowser:
    """Opens the system browser and asks the user to paste the redirect URL.

    Useful when the redirect URI points at a page nothing listens on: the
    browser shows an error page, but its address bar holds the code.
    An empty answer counts as cancellation.
    """

    def __init__(
        self,
        launch: bool = True,
        prompt: Callable[[str], str] | None = None,
    ) -> None:
        self.launch = launch
        self._prompt = prompt or (lambda text: click.prompt(text, default="", show_default=False))

    def open(self, authorize_url: str, redirect_uri_prefix: str) -> str | None:
        click.echo("Open this URL to sign in:")
        click.echo(f"  {authorize_url}")
        if self.launch and not webbrowser.open(authorize_url):
            logger.debug("No system browser available")

        while True:
            answer = self._prompt(f"Paste the URL starting with {redirect_uri_prefix} (empty to cancel)").strip()
            if not answer:
                return None
            if answer.startswith(redirect_uri_prefix):
                return answer
            click.echo(f"That URL does not start with {redirect_uri_prefix}; try again.", err=True)
