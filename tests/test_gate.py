import pytest
from flask import Flask

from hitcounter.gate import (
    UNKNOWN_IP_ADDRESS,
    RequestContext,
    describe_agent,
    is_hit_allowed,
    resolve_client_ip,
)
from tests.conftest import BOT_UA, BROWSER_UA


def test_first_header_with_a_public_address_wins():
    headers = {"X-Forwarded-For": "1.1.1.1", "Client-IP": "8.8.8.8"}
    assert resolve_client_ip(headers, "9.9.9.9") == "8.8.8.8"


def test_private_entries_in_forwarded_for_are_skipped():
    headers = {"X-Forwarded-For": "10.0.0.4, 192.168.1.1, 1.1.1.1, 8.8.8.8"}
    assert resolve_client_ip(headers) == "1.1.1.1"


def test_forwarded_header_for_syntax():
    assert resolve_client_ip({"Forwarded": 'for="9.9.9.9:443"'}) == "9.9.9.9"
    assert resolve_client_ip({"Forwarded": 'for="[2606:4700:4700::1111]:443"'}) == "2606:4700:4700::1111"


def test_falls_back_to_the_socket_address():
    assert resolve_client_ip({"X-Forwarded-For": "127.0.0.1"}, "9.9.9.9") == "9.9.9.9"


@pytest.mark.parametrize("headers, remote", [
    ({}, None),
    ({}, "127.0.0.1"),
    ({"X-Forwarded-For": "garbage, 172.16.0.1"}, "10.1.2.3"),
])
def test_unknown_when_nothing_is_public(headers, remote):
    assert resolve_client_ip(headers, remote) == UNKNOWN_IP_ADDRESS


def test_agent_description():
    browser = describe_agent(BROWSER_UA)
    assert browser["is_crawler"] is False
    assert browser["browser"] == "Chrome"
    assert browser["platform"] == "Windows"
    assert describe_agent(BOT_UA)["is_crawler"] is True


def test_hit_gate():
    human = RequestContext.build("8.8.8.8", BROWSER_UA)
    assert is_hit_allowed(human)
    assert not is_hit_allowed(RequestContext.build("8.8.8.8", BOT_UA))
    assert not is_hit_allowed(RequestContext.build(UNKNOWN_IP_ADDRESS, BROWSER_UA))
    assert not is_hit_allowed(RequestContext.build("8.8.8.8", BROWSER_UA, do_not_track=True))


def test_test_mode_lets_everything_through():
    assert is_hit_allowed(RequestContext.build(UNKNOWN_IP_ADDRESS, BOT_UA, True), test_mode=True)


def test_context_from_a_request():
    app = Flask(__name__)
    headers = {"X-Forwarded-For": "1.1.1.1", "User-Agent": BROWSER_UA, "DNT": "1"}
    with app.test_request_context("/", headers=headers, environ_base={"REMOTE_ADDR": "127.0.0.1"}):
        from flask import request

        ctx = RequestContext.from_request(request)
    assert ctx.ip_address == "1.1.1.1"
    assert ctx.user_agent == BROWSER_UA
    assert ctx.do_not_track is True
    assert ctx.browser == "Chrome"


def test_empty_address_becomes_unknown():
    assert RequestContext.build("", BROWSER_UA).ip_address == UNKNOWN_IP_ADDRESS
