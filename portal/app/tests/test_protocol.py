"""
Tests for the Sign-In Protocol Customizer.
"""

from urllib.parse import parse_qs, urlsplit

import pytest
from pydantic import ValidationError

from portal.app.auth.protocol import (
    STEP_UP_CLAIMS,
    AuthenticationProperties,
    ProtocolMessage,
    customize,
)


AUTHORIZE = "https://contoso.ciamlogin.com/tenant/oauth2/v2.0/authorize"


@pytest.fixture
def message():
    return ProtocolMessage(
        issuer_address=AUTHORIZE,
        parameters={"client_id": "client", "state": "abc"},
    )


def props(**items):
    return AuthenticationProperties.from_items(items)


def test_step_up_claims_literal():
    assert STEP_UP_CLAIMS == (
        "%7B%22access_token%22%3A%7B%22acrs%22%3A%7B%22essential%22%3Atrue%2C%22value%22%3A%22c1%22%7D%7D%7D"
    )


def test_no_properties_leaves_message_untouched(message):
    customize(message, AuthenticationProperties())

    assert message.issuer_address == AUTHORIZE
    assert message.parameters == {"client_id": "client", "state": "abc"}


def test_force_sets_prompt_login(message):
    customize(message, props(force="true"))
    assert message.prompt == "login"


def test_empty_force_value_still_forces(message):
    customize(message, props(force=""))
    assert message.prompt == "login"


def test_prompt_wins_over_force(message):
    customize(message, props(force="true", prompt="create"))
    assert message.prompt == "create"


def test_step_up_sets_claims(message):
    customize(message, props(StepUp="true"))
    assert message.parameters["claims"] == STEP_UP_CLAIMS


def test_claims_challenge_replaces_step_up_claims(message):
    customize(message, props(StepUp="true", claims="eyJhY2Nlc3NfdG9rZW4iOnt9fQ"))
    assert message.parameters["claims"] == "eyJhY2Nlc3NfdG9rZW4iOnt9fQ"


def test_domain_replaces_host_only():
    message = ProtocolMessage("https://login.example.com:8443/tenant/authorize?p=flow")
    customize(message, props(domain="login.contoso.com"))

    parts = urlsplit(message.issuer_address)
    assert parts.scheme == "https"
    assert parts.hostname == "login.contoso.com"
    assert parts.port == 8443
    assert parts.path == "/tenant/authorize"
    assert parts.query == "p=flow"


def test_ui_locales_sets_mkt_and_ui_locales(message):
    customize(message, props(ui_locales="es-ES"))

    assert message.ui_locales == "es-ES"
    assert message.parameters["mkt"] == "es-ES"


def test_hints(message):
    customize(message, props(login_hint="user@contoso.com", domain_hint="contoso.com"))

    assert message.login_hint == "user@contoso.com"
    assert message.domain_hint == "contoso.com"


def test_query_string_adds_parameters(message):
    customize(message, props(**{"query-string": "a=1&b=2"}))

    assert message.parameters["a"] == "1"
    assert message.parameters["b"] == "2"


def test_query_string_never_replaces_protocol_parameters(message):
    customize(message, props(**{"query-string": "state=attacker&nonce=n&client_id=other&extra=1"}))

    assert message.parameters["state"] == "abc"
    assert message.parameters["client_id"] == "client"
    assert "nonce" not in message.parameters
    assert message.parameters["extra"] == "1"


def test_query_string_skips_malformed_pairs(message):
    customize(message, props(**{"query-string": "a=1&bad&c=x=y"}))

    assert message.parameters["a"] == "1"
    assert "bad" not in message.parameters
    assert "c" not in message.parameters


def test_unknown_property_rejected():
    with pytest.raises(ValidationError):
        AuthenticationProperties.from_items({"unsupported": "1"})


def test_field_names_accepted_as_well_as_aliases():
    properties = AuthenticationProperties(step_up="true", query_string="a=1")

    assert properties.step_up == "true"
    assert properties.query_string == "a=1"


class TestAuthenticationRequestUrl:
    """Serialization of the customized message"""

    def test_step_up_claims_not_double_encoded(self, message):
        customize(message, props(StepUp="true"))
        url = message.create_authentication_request_url()

        assert f"claims={STEP_UP_CLAIMS}" in url
        assert "%25" not in url

        claims = parse_qs(urlsplit(url).query)["claims"][0]
        assert claims == '{"access_token":{"acrs":{"essential":true,"value":"c1"}}}'

    def test_values_are_escaped(self, message):
        message.set_parameter("scope", "openid profile")
        message.set_parameter("redirect_uri", "https://portal/auth/callback/OpenIdConnect")
        url = message.create_authentication_request_url()

        assert "scope=openid%20profile" in url
        assert "redirect_uri=https%3A%2F%2Fportal%2Fauth%2Fcallback%2FOpenIdConnect" in url

    def test_existing_query_is_extended(self):
        message = ProtocolMessage(f"{AUTHORIZE}?p=flow", {"state": "s"})
        assert message.create_authentication_request_url() == f"{AUTHORIZE}?p=flow&state=s"

    def test_literal_percent_is_escaped(self, message):
        customize(message, props(login_hint="50%off", **{"query-string": "promo=10%"}))
        url = message.create_authentication_request_url()

        assert "login_hint=50%25off" in url
        assert "promo=10%25" in url
        query = parse_qs(urlsplit(url).query)
        assert query["login_hint"] == ["50%off"]
        assert query["promo"] == ["10%"]

    def test_challenge_claims_encoded_once(self, message):
        payload = '{"access_token":{"xms_cc":{"values":["cp1"]}}}'
        customize(message, props(StepUp="true", claims=payload))
        url = message.create_authentication_request_url()

        assert parse_qs(urlsplit(url).query)["claims"] == [payload]
