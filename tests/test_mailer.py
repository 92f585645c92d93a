import dataclasses
import json

import httpx
import pytest

from coursepay.errors import ConfigError
from coursepay.mailer import HttpMailer, LogMailer, MemoryMailer, new_mailer


async def test_http_mailer_posts_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(202)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    mailer = HttpMailer("https://relay.example/send", "shop@example.com",
                        client=client)
    await mailer.send("a@b.com", "Hello", "body")
    await client.aclose()

    assert seen == [{"from": "shop@example.com", "to": "a@b.com",
                     "subject": "Hello", "text": "body"}]


async def test_http_mailer_raises_on_relay_error():
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda r: httpx.Response(500))
    )
    mailer = HttpMailer("https://relay.example/send", "x@example.com",
                        client=client)
    with pytest.raises(httpx.HTTPStatusError):
        await mailer.send("a@b.com", "Hello", "body")
    await client.aclose()


def test_new_mailer_transports(settings):
    assert isinstance(new_mailer(settings), LogMailer)
    memory = dataclasses.replace(settings, mail_transport="memory")
    assert isinstance(new_mailer(memory), MemoryMailer)
    http = dataclasses.replace(settings, mail_transport="http",
                               mail_relay_url="https://relay.example/send")
    assert isinstance(new_mailer(http), HttpMailer)
    with pytest.raises(ConfigError):
        new_mailer(dataclasses.replace(settings, mail_transport="http"))
