"""
Tests for the Step-Up Verifier Gateway and the directory writes it triggers.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from portal.app.auth.challenge import DownstreamError
from portal.app.auth.errors import NetworkError
from portal.app.config import DownstreamApiSettings
from portal.app.models import AuthMethodType, VerificationStatus, VerifyCodeRequest
from portal.app.profile.directory import DirectoryClient, DirectoryError
from portal.app.profile.verify import MFA_REQUIRED_MESSAGE, StepUpVerifier
from portal.app.telemetry import Telemetry

from conftest import TOKEN_ENDPOINT, USER_OID, json_response, make_ticket


VERIFY_URL = "https://groceries.example.com/api/VerifyCode"
GRAPH = "https://graph.microsoft.com/v1.0"


@pytest.fixture
def verify_request():
    return VerifyCodeRequest(code="123456", authType=AuthMethodType.EMAIL_MFA, authValue="ada@contoso.com")


@pytest.fixture
def directory():
    directory = AsyncMock(spec=DirectoryClient)
    return directory


@pytest.fixture
def verifier(portal_state, http_client, directory, settings):
    return StepUpVerifier(
        http_client,
        portal_state.tokens,
        directory,
        settings.GROCERIES_API,
        Telemetry(),
    )


def token_then(http_client, *responses):
    """Token endpoint answers first, then the given responses."""
    http_client.post.side_effect = [
        json_response(200, {"access_token": "downstream-at"}, "POST", TOKEN_ENDPOINT),
        *responses,
    ]


class TestVerify:

    @pytest.mark.asyncio
    async def test_rejected_without_step_up(self, verifier, http_client, verify_request):
        ticket = make_ticket(step_up=False)

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.AUTHORIZATION_ERROR
        assert result.message == MFA_REQUIRED_MESSAGE
        http_client.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_with_other_context(self, verifier, http_client, verify_request):
        ticket = make_ticket(acrs=["c2"])

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.AUTHORIZATION_ERROR
        http_client.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_updates_directory(self, verifier, http_client, directory, verify_request):
        ticket = make_ticket(step_up=True)
        token_then(http_client, json_response(200, {
            "validationPassed": True,
            "authType": "EmailMfa",
            "authValue": "ada@contoso.com",
            "message": "Verified",
        }, "POST", VERIFY_URL))

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.SUCCESS
        assert result.validationPassed is True
        assert result.authValue == "ada@contoso.com"
        directory.upsert_email_method.assert_awaited_once_with(USER_OID, "ada@contoso.com")
        directory.update_sign_in_email.assert_not_awaited()

        url = http_client.post.call_args_list[1].args[0]
        kwargs = http_client.post.call_args_list[1].kwargs
        assert url == VERIFY_URL
        assert kwargs["headers"]["Authorization"] == "Bearer downstream-at"
        assert kwargs["json"] == {"code": "123456", "authType": "EmailMfa", "authValue": "ada@contoso.com"}

    @pytest.mark.asyncio
    async def test_sign_in_email_update(self, verifier, http_client, directory):
        ticket = make_ticket(step_up=True)
        token_then(http_client, json_response(200, {
            "validationPassed": True,
            "authType": "SignInEmail",
            "authValue": "new@contoso.com",
        }, "POST", VERIFY_URL))
        request = VerifyCodeRequest(code="1", authType=AuthMethodType.SIGN_IN_EMAIL, authValue="new@contoso.com")

        result = await verifier.verify(ticket.principal, ticket, request)

        assert result.status == VerificationStatus.SUCCESS
        directory.update_sign_in_email.assert_awaited_once_with(USER_OID, "new@contoso.com")

    @pytest.mark.asyncio
    async def test_validation_failed(self, verifier, http_client, directory, verify_request):
        ticket = make_ticket(step_up=True)
        token_then(http_client, json_response(200, {
            "validationPassed": False,
            "message": "The code is invalid",
        }, "POST", VERIFY_URL))

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.VALIDATION_FAILED
        assert result.message == "The code is invalid"
        directory.upsert_email_method.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_directory_failure_keeps_success(self, verifier, http_client, directory, verify_request):
        ticket = make_ticket(step_up=True)
        token_then(http_client, json_response(200, {
            "validationPassed": True,
            "authType": "EmailMfa",
            "authValue": "ada@contoso.com",
        }, "POST", VERIFY_URL))
        directory.upsert_email_method.side_effect = DirectoryError("Graph unavailable")

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.SUCCESS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        KeyError("id"),
        TypeError("'list' object is not subscriptable"),
        httpx.InvalidURL("invalid host"),
    ])
    async def test_unexpected_directory_error_keeps_success(
        self, verifier, http_client, directory, verify_request, error, caplog
    ):
        ticket = make_ticket(step_up=True)
        token_then(http_client, json_response(200, {
            "validationPassed": True,
            "authType": "EmailMfa",
            "authValue": "ada@contoso.com",
        }, "POST", VERIFY_URL))
        directory.upsert_email_method.side_effect = error

        with caplog.at_level("ERROR", logger="portal.app.profile.verify"):
            result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.SUCCESS
        assert result.validationPassed is True
        assert any("Directory update failed" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_post_fails(self, verifier, http_client, verify_request):
        ticket = make_ticket(step_up=True)
        token_then(http_client, httpx.ConnectError("refused"))

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_downstream_error_status(self, verifier, http_client, verify_request):
        ticket = make_ticket(step_up=True)
        token_then(http_client, json_response(500, {"error": "boom"}, "POST", VERIFY_URL))

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.NETWORK_ERROR
        assert result.validationPassed is False

    @pytest.mark.asyncio
    async def test_no_cached_identity(self, verifier, http_client, verify_request):
        ticket = make_ticket(step_up=True, refresh_token=None)

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.CREDENTIAL_ERROR
        http_client.post.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_token_endpoint_unreachable(self, verifier, http_client, verify_request):
        ticket = make_ticket(step_up=True)
        http_client.post.side_effect = httpx.ReadTimeout("slow")

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_missing_scopes(self, portal_state, http_client, directory, verify_request):
        verifier = StepUpVerifier(
            http_client,
            portal_state.tokens,
            directory,
            DownstreamApiSettings(BASE_URL="api://groceries", ENDPOINT="https://groceries/api/"),
            Telemetry(),
        )
        ticket = make_ticket(step_up=True)

        result = await verifier.verify(ticket.principal, ticket, verify_request)

        assert result.status == VerificationStatus.CONFIGURATION_ERROR
        assert "GroceriesApi:Scopes" in result.message
        http_client.post.assert_not_awaited()


# ============================================================================
# Directory Client Tests
# ============================================================================

@pytest.fixture
def app_tokens():
    tokens = AsyncMock()
    tokens.acquire_for_app.return_value.authorization_header = "Bearer app-token"
    return tokens


@pytest.fixture
def graph_client():
    return AsyncMock(spec=httpx.AsyncClient)


def graph_response(status_code, body=None, method="GET"):
    if body is None:
        return httpx.Response(status_code, request=httpx.Request(method, GRAPH))
    return json_response(status_code, body, method, GRAPH)


class TestDirectoryClient:

    @pytest.mark.asyncio
    async def test_get_me(self, graph_client, app_tokens):
        graph_client.request.return_value = graph_response(200, {"id": USER_OID, "displayName": "Ada"})
        client = DirectoryClient(graph_client, app_tokens, GRAPH, ["https://graph.microsoft.com/.default"])

        profile = await client.get_me("https://graph.microsoft.com/v1.0/", "Bearer user-token")

        method, url = graph_client.request.call_args.args
        assert profile["displayName"] == "Ada"
        assert (method, url) == ("GET", f"{GRAPH}/me")
        assert graph_client.request.call_args.kwargs["headers"]["Authorization"] == "Bearer user-token"

    @pytest.mark.asyncio
    async def test_get_me_error(self, graph_client, app_tokens):
        graph_client.request.return_value = graph_response(
            401, {"error": {"code": "InvalidAuthenticationToken", "message": "Access token has expired"}}
        )
        client = DirectoryClient(graph_client, app_tokens, GRAPH, [])

        with pytest.raises(DownstreamError) as exc_info:
            await client.get_me(GRAPH, "Bearer user-token")

        assert exc_info.value.code == "InvalidAuthenticationToken"

    @pytest.mark.asyncio
    async def test_unreachable(self, graph_client, app_tokens):
        graph_client.request.side_effect = httpx.ConnectError("refused")
        client = DirectoryClient(graph_client, app_tokens, GRAPH, [])

        with pytest.raises(NetworkError):
            await client.get_me(GRAPH, "Bearer user-token")

    @pytest.mark.asyncio
    async def test_update_federated_sign_in_email(self, graph_client, app_tokens):
        graph_client.request.side_effect = [
            graph_response(200, {"identities": [
                {"signInType": "userPrincipalName", "issuer": "contoso.onmicrosoft.com", "issuerAssignedId": "x"},
                {"signInType": "federated", "issuer": "google.com", "issuerAssignedId": "old@contoso.com"},
            ]}),
            graph_response(204, method="PATCH"),
        ]
        client = DirectoryClient(graph_client, app_tokens, GRAPH, [])

        await client.update_sign_in_email(USER_OID, "new@contoso.com")

        method, url = graph_client.request.call_args.args
        body = graph_client.request.call_args.kwargs["json"]
        assert (method, url) == ("PATCH", f"{GRAPH}/users/{USER_OID}")
        assert body["identities"][1]["issuerAssignedId"] == "new@contoso.com"
        assert body["mail"] == "new@contoso.com"
        assert body["otherMails"] == ["new@contoso.com"]

    @pytest.mark.asyncio
    async def test_add_email_identity(self, graph_client, app_tokens):
        graph_client.request.side_effect = [
            graph_response(200, {"identities": [
                {"signInType": "userPrincipalName", "issuer": "contoso.onmicrosoft.com", "issuerAssignedId": "x"},
            ]}),
            graph_response(204, method="PATCH"),
        ]
        client = DirectoryClient(graph_client, app_tokens, GRAPH, [])

        await client.update_sign_in_email(USER_OID, "new@contoso.com")

        added = graph_client.request.call_args.kwargs["json"]["identities"][-1]
        assert added == {
            "signInType": "emailAddress",
            "issuer": "contoso.onmicrosoft.com",
            "issuerAssignedId": "new@contoso.com",
        }

    @pytest.mark.asyncio
    async def test_no_identities(self, graph_client, app_tokens):
        graph_client.request.return_value = graph_response(200, {"identities": []})
        client = DirectoryClient(graph_client, app_tokens, GRAPH, [])

        with pytest.raises(DirectoryError):
            await client.update_sign_in_email(USER_OID, "new@contoso.com")

    @pytest.mark.asyncio
    async def test_update_existing_email_method(self, graph_client, app_tokens):
        graph_client.request.side_effect = [
            graph_response(200, {"value": [{"id": "m1", "emailAddress": "old@contoso.com"}]}),
            graph_response(200, {"id": "m1"}, method="PATCH"),
        ]
        client = DirectoryClient(graph_client, app_tokens, GRAPH, [])

        await client.upsert_email_method(USER_OID, "new@contoso.com")

        method, url = graph_client.request.call_args.args
        assert method == "PATCH"
        assert url.endswith("/authentication/emailMethods/m1")

    @pytest.mark.asyncio
    async def test_add_email_method(self, graph_client, app_tokens):
        graph_client.request.side_effect = [
            graph_response(200, {"value": []}),
            graph_response(201, {"id": "m2"}, method="POST"),
        ]
        client = DirectoryClient(graph_client, app_tokens, GRAPH, [])

        await client.upsert_email_method(USER_OID, "new@contoso.com")

        method, url = graph_client.request.call_args.args
        assert method == "POST"
        assert graph_client.request.call_args.kwargs["json"] == {"emailAddress": "new@contoso.com"}

    @pytest.mark.asyncio
    async def test_email_method_without_id(self, graph_client, app_tokens):
        graph_client.request.return_value = graph_response(200, {"value": [{"emailAddress": "old@contoso.com"}]})
        client = DirectoryClient(graph_client, app_tokens, GRAPH, [])

        with pytest.raises(DirectoryError, match="no id"):
            await client.upsert_email_method(USER_OID, "new@contoso.com")

        assert graph_client.request.await_count == 1
