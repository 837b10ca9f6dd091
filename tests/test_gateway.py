import unittest

import httpx

from app.config import Settings
from services.notifier.outbound import CallContext, TwilioGateway

CONTEXT = CallContext(medicine_name="Metformin", patient_identity="asha@example.com")


def _settings(**overrides) -> Settings:
    values = dict(
        twilio_account_sid="AC123",
        twilio_auth_token="secret",
        twilio_phone_number="+15550001111",
        twilio_sms_from=None,
        api_timeout_seconds=2.0,
    )
    values.update(overrides)
    return Settings(**values)


def _gateway(handler, **overrides) -> TwilioGateway:
    return TwilioGateway(_settings(**overrides), client=httpx.Client(transport=httpx.MockTransport(handler)))


class TwilioGatewayTests(unittest.TestCase):
    def test_missing_config_is_reported_without_a_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        gateway = _gateway(handler, twilio_auth_token=None)

        call = gateway.place_call("+919800000001", CONTEXT)
        sms = gateway.send_sms("+919800000001", "hello")

        self.assertFalse(call.ok)
        self.assertEqual("mock", call.provider)
        self.assertEqual("missing_config", call.status)
        self.assertIn("asha@example.com", call.message)
        self.assertEqual("missing_config", sms.status)

    def test_missing_phone_is_checked_before_config(self) -> None:
        gateway = _gateway(lambda request: httpx.Response(500), twilio_auth_token=None)

        result = gateway.send_sms("   ", "hello")

        self.assertEqual("missing_phone", result.status)

    def test_successful_call_posts_form_and_returns_sid(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "CA42", "status": "queued"})

        result = _gateway(handler).place_call(" +919800000001 ", CONTEXT)

        self.assertTrue(result.ok)
        self.assertEqual("twilio", result.provider)
        self.assertEqual("CA42", result.reference)
        self.assertEqual("queued", result.status)
        request = seen[0]
        self.assertTrue(str(request.url).endswith("/Accounts/AC123/Calls.json"))
        self.assertTrue(request.headers["authorization"].startswith("Basic "))
        form = dict(httpx.QueryParams(request.content.decode()))
        self.assertEqual("+919800000001", form["To"])
        self.assertEqual("+15550001111", form["From"])
        self.assertIn("Url", form)

    def test_sms_uses_dedicated_sender_and_trims_body(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(dict(httpx.QueryParams(request.content.decode())))
            return httpx.Response(201, json={"sid": "SM1"})

        result = _gateway(handler, twilio_sms_from="+15550002222").send_sms("+919800000001", "y" * 800)

        self.assertTrue(result.ok)
        self.assertEqual("queued", result.status)
        self.assertEqual("+15550002222", seen[0]["From"])
        self.assertEqual(700, len(seen[0]["Body"]))

    def test_provider_error_returns_failed_with_message(self) -> None:
        gateway = _gateway(lambda request: httpx.Response(400, json={"message": "Invalid 'To' number"}))

        result = gateway.send_sms("+1", "hello")

        self.assertFalse(result.ok)
        self.assertEqual("failed", result.status)
        self.assertEqual("Invalid 'To' number", result.message)

    def test_provider_error_without_json_body(self) -> None:
        gateway = _gateway(lambda request: httpx.Response(503, text="unavailable"))

        result = gateway.place_call("+919800000001", CONTEXT)

        self.assertEqual("failed", result.status)
        self.assertIn("503", result.message)

    def test_timeout_is_reported_as_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        result = _gateway(handler).place_call("+919800000001", CONTEXT)

        self.assertFalse(result.ok)
        self.assertEqual("timeout", result.status)
        self.assertIn("timed out", result.message)

    def test_network_error_is_reported_as_failed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        result = _gateway(handler).send_sms("+919800000001", "hello")

        self.assertFalse(result.ok)
        self.assertEqual("failed", result.status)
        self.assertIn("connection refused", result.message)


if __name__ == "__main__":
    unittest.main()
