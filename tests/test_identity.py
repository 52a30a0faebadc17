import json

import httpx

from tokenwarden.service.identity import USER_AGENT, IdentityVerification, IdentityVerifier


def _verifier(handler, **kwargs) -> IdentityVerifier:
    return IdentityVerifier(
        "http://identity.test/",
        api_key="identity-key",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestVerify:
    async def test_verified_subject_gets_permissions(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = json.loads(request.content)
            assert body == {"subject_id": "user-1"}
            if request.url.path == "/v1/identity/verify":
                return httpx.Response(
                    200,
                    json={"verified": True, "subject_id": "user-1", "trust_level": 3, "user_type": "human"},
                )
            return httpx.Response(200, json={"permissions": ["res.read"], "roles": ["reader"]})

        verifier = _verifier(handler)
        result = await verifier.verify("user-1")
        await verifier.close()

        assert result.verified is True
        assert result.trust_level == 3
        assert result.user_type == "human"
        assert result.permissions == ["res.read"]
        assert result.roles == ["reader"]
        assert [r.url.path for r in seen] == ["/v1/identity/verify", "/v1/identity/permissions"]
        assert seen[0].headers["Authorization"] == "Bearer identity-key"
        assert seen[0].headers["User-Agent"] == USER_AGENT

    async def test_unverified_subject(self):
        def handler(request):
            return httpx.Response(200, json={"verified": False, "error": "unknown subject"})

        result = await _verifier(handler).verify("ghost")

        assert result.verified is False
        assert result.error == "unknown subject"
        assert result.permissions == []

    async def test_http_error_status(self):
        result = await _verifier(lambda request: httpx.Response(503)).verify("user-1")
        assert result.verified is False
        assert "503" in result.error

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = await _verifier(handler).verify("user-1")
        assert result.verified is False
        assert result.error == "identity service unavailable"

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        result = await _verifier(handler).verify("user-1")
        assert result.error == "identity service timed out"

    async def test_non_json_body(self):
        result = await _verifier(lambda request: httpx.Response(200, text="<html>")).verify("u")
        assert result.verified is False

    async def test_permissions_failure_yields_empty_sets(self):
        def handler(request):
            if request.url.path == "/v1/identity/verify":
                return httpx.Response(200, json={"verified": True})
            return httpx.Response(500)

        result = await _verifier(handler).verify("user-1")
        assert result.verified is True
        assert result.subject_id == "user-1"
        assert (result.permissions, result.roles) == ([], [])


class TestHealth:
    async def test_health_check(self):
        assert await _verifier(lambda request: httpx.Response(200)).health_check() is True
        assert await _verifier(lambda request: httpx.Response(502)).health_check() is False

    async def test_health_check_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await _verifier(handler).health_check() is False

    def test_is_configured(self):
        assert IdentityVerifier("http://x", api_key="k").is_configured is True
        assert IdentityVerifier("http://x").is_configured is False

    def test_to_dict(self):
        payload = IdentityVerification(verified=True, subject_id="u", permissions=["a.b"]).to_dict()
        assert payload["permissions"] == ["a.b"]
        assert payload["error"] is None
