"""Test helpers for building settings and keyed upstream responses."""

from typing import Callable, Dict, List, Union

import httpx

from gemini_relay.config import RelaySettings

BASE_URL = "https://gemini.test/v1beta/models"
MODEL = "gemini-test"
ENDPOINT = f"{BASE_URL}/{MODEL}:generateContent"

Outcome = Union[httpx.Response, Exception]


def make_settings(*credentials: str, **overrides) -> RelaySettings:
    return RelaySettings(credentials=tuple(credentials), model=MODEL, base_url=BASE_URL, **overrides)


def by_key(outcomes: Dict[str, Outcome]) -> Callable[[httpx.Request], httpx.Response]:
    """respx side effect answering according to the request's key parameter."""

    def side_effect(request: httpx.Request) -> httpx.Response:
        outcome = outcomes[request.url.params["key"]]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return side_effect


def keys_called(route) -> List[str]:
    return [call.request.url.params["key"] for call in route.calls]
