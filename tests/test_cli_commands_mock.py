import base64
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from carecore_cli.core.api import ApiError, SessionExpired
from carecore_cli.main import app

runner = CliRunner()


class TestAuthCommands(unittest.TestCase):

    @patch("carecore_cli.auth.commands.is_logged_in")
    @patch("carecore_cli.auth.commands.api_login_url")
    def test_login_prints_authorization_url(self, mock_login_url, mock_logged_in):
        mock_logged_in.return_value = False
        mock_login_url.return_value = {"authorizationUrl": "http://idp.test/auth?state=abc", "state": "abc"}

        result = runner.invoke(app, ["auth", "login"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("http://idp.test/auth?state=abc", result.stdout)

    @patch("carecore_cli.auth.commands.is_logged_in")
    @patch("carecore_cli.auth.commands.api_login_url")
    def test_login_refused_with_active_session(self, mock_login_url, mock_logged_in):
        mock_logged_in.return_value = True

        result = runner.invoke(app, ["auth", "login"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("Session already active", result.stdout)
        mock_login_url.assert_not_called()

    @patch("carecore_cli.auth.commands.is_logged_in")
    @patch("carecore_cli.auth.commands.api_login_url")
    def test_login_reports_gateway_error(self, mock_login_url, mock_logged_in):
        mock_logged_in.return_value = False
        mock_login_url.side_effect = ApiError(400, "Keycloak configuration is missing")

        result = runner.invoke(app, ["auth", "login"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("Keycloak configuration is missing", result.stdout)

    @patch("carecore_cli.auth.commands.save_tokens")
    def test_tokens_are_stored(self, mock_save):
        result = runner.invoke(app, ["auth", "tokens", "--access-token", " abc ", "--refresh-token", "def"])

        self.assertEqual(result.exit_code, 0)
        mock_save.assert_called_once_with("abc", "def")

    @patch("carecore_cli.auth.commands.save_tokens")
    def test_empty_access_token_is_rejected(self, mock_save):
        result = runner.invoke(app, ["auth", "tokens", "--access-token", "  ", "--refresh-token", ""])

        self.assertEqual(result.exit_code, 1)
        mock_save.assert_not_called()

    @patch("carecore_cli.auth.commands.api_whoami")
    def test_whoami(self, mock_whoami):
        mock_whoami.return_value = {
            "id": "user-1",
            "username": "alice",
            "email": "alice@example.org",
            "roles": ["practitioner"],
            "scopes": ["patient:read"],
        }

        result = runner.invoke(app, ["auth", "whoami"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("alice", result.stdout)
        self.assertIn("practitioner", result.stdout)

    @patch("carecore_cli.auth.commands.api_whoami")
    def test_whoami_with_expired_session(self, mock_whoami):
        mock_whoami.side_effect = SessionExpired("Session expired. Please login again.")

        result = runner.invoke(app, ["auth", "whoami"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("Please login again", result.stdout)

    @patch("carecore_cli.auth.commands.clear_session")
    @patch("carecore_cli.auth.commands.api_logout")
    @patch("carecore_cli.auth.commands.load_refresh_token")
    def test_logout_clears_session_even_if_gateway_fails(self, mock_refresh, mock_logout, mock_clear):
        mock_refresh.return_value = "refresh-1"
        mock_logout.side_effect = ApiError(0, "Gateway unreachable")

        result = runner.invoke(app, ["auth", "logout"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("Warning", result.stdout)
        mock_clear.assert_called_once()

    @patch("carecore_cli.auth.commands.api_mfa_status")
    def test_mfa_status(self, mock_status):
        mock_status.return_value = {"mfa_enabled": False, "mfa_required": True, "message": "MFA is required"}

        result = runner.invoke(app, ["auth", "mfa-status"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("MFA enabled:  no", result.stdout)
        self.assertIn("MFA required: yes", result.stdout)

    @patch("carecore_cli.auth.commands.api_mfa_setup")
    def test_mfa_setup_prints_key_and_saves_qr(self, mock_setup):
        png = b"\x89PNG\r\n\x1a\nfake"
        mock_setup.return_value = {
            "secret": "GEZDGNBVGY3TQOJQ",
            "manualEntryKey": "GEZDGNBVGY3TQOJQ",
            "otpauthUrl": "otpauth://totp/CareCore:alice?secret=GEZDGNBVGY3TQOJQ",
            "qrCode": "data:image/png;base64," + base64.b64encode(png).decode(),
            "message": "Scan the QR code with your authenticator app",
        }

        with tempfile.TemporaryDirectory() as tmp:
            qr_path = Path(tmp) / "mfa.png"
            result = runner.invoke(app, ["auth", "mfa-setup", "--qr-file", str(qr_path)])

            self.assertEqual(result.exit_code, 0)
            self.assertEqual(qr_path.read_bytes(), png)
        self.assertIn("Manual entry key: GEZDGNBVGY3TQOJQ", result.stdout)
        self.assertIn("otpauth://totp/", result.stdout)

    @patch("carecore_cli.auth.commands.api_mfa_setup")
    def test_mfa_setup_reports_gateway_error(self, mock_setup):
        mock_setup.side_effect = ApiError(400, "MFA is already configured for this user")

        result = runner.invoke(app, ["auth", "mfa-setup"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("MFA is already configured for this user", result.stdout)

    @patch("carecore_cli.auth.commands.api_mfa_verify")
    def test_mfa_verify(self, mock_verify):
        mock_verify.return_value = {"success": True, "message": "MFA enabled successfully", "mfa_enabled": True}

        result = runner.invoke(app, ["auth", "mfa-verify", "--code", "123456"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("MFA enabled successfully", result.stdout)
        self.assertEqual(mock_verify.call_args.args[1], "123456")

    @patch("carecore_cli.auth.commands.api_mfa_verify")
    def test_mfa_verify_prompts_for_code(self, mock_verify):
        mock_verify.return_value = {"message": "MFA enabled successfully"}

        result = runner.invoke(app, ["auth", "mfa-verify"], input="654321\n")

        self.assertEqual(result.exit_code, 0)
        self.assertEqual(mock_verify.call_args.args[1], "654321")

    @patch("carecore_cli.auth.commands.api_mfa_disable")
    def test_mfa_disable_with_wrong_code(self, mock_disable):
        mock_disable.side_effect = ApiError(400, "Invalid TOTP code. Please provide a valid code to disable MFA.")

        result = runner.invoke(app, ["auth", "mfa-disable", "--code", "000000"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("Failed to disable MFA: Invalid TOTP code", result.stdout)

    @patch("carecore_cli.auth.commands.api_mfa_disable")
    def test_mfa_disable_without_session(self, mock_disable):
        mock_disable.side_effect = SessionExpired("No active session. Please login first.")

        result = runner.invoke(app, ["auth", "mfa-disable", "--code", "123456"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("No active session", result.stdout)


class TestVerificationCommands(unittest.TestCase):

    @patch("carecore_cli.verifications.commands.api_list_verifications")
    def test_list(self, mock_list):
        mock_list.return_value = {
            "data": [{
                "id": "0f8c2d3e-0000-4000-8000-000000000001",
                "practitioner_id": "P-0001",
                "document_type": "cedula",
                "status": "pending",
                "created_at": "2026-01-01T10:00:00",
            }],
            "total": 1,
            "page": 1,
            "total_pages": 1,
        }

        result = runner.invoke(app, ["verifications", "list", "--status", "pending"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("P-0001", result.stdout)
        self.assertEqual(mock_list.call_args.kwargs["status"], "pending")

    def test_list_rejects_unknown_status(self):
        result = runner.invoke(app, ["verifications", "list", "--status", "lost"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("Invalid status", result.stdout)

    @patch("carecore_cli.verifications.commands.api_review_verification")
    def test_approve(self, mock_review):
        mock_review.return_value = {"message": "Verification approved successfully"}

        result = runner.invoke(app, ["verifications", "review", "v-1", "--approve"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("approved successfully", result.stdout)
        args = mock_review.call_args.args
        self.assertEqual(args[1:], ("v-1", "approved", None))

    @patch("carecore_cli.verifications.commands.api_review_verification")
    def test_reject_prompts_for_reason(self, mock_review):
        mock_review.return_value = {"message": "Verification rejected"}

        result = runner.invoke(app, ["verifications", "review", "v-1", "--reject"], input="Blurry scan\n")

        self.assertEqual(result.exit_code, 0)
        self.assertEqual(mock_review.call_args.args[1:], ("v-1", "rejected", "Blurry scan"))

    def test_review_needs_exactly_one_decision(self):
        for flags in ([], ["--approve", "--reject"]):
            with self.subTest(flags=flags):
                result = runner.invoke(app, ["verifications", "review", "v-1", *flags])
                self.assertEqual(result.exit_code, 1)

    @patch("carecore_cli.verifications.commands.api_review_verification")
    def test_conflict_is_reported(self, mock_review):
        mock_review.side_effect = ApiError(409, "Verification has already been reviewed. Current status: approved")

        result = runner.invoke(app, ["verifications", "review", "v-1", "--approve"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("409", result.stdout)
        self.assertIn("already been reviewed", result.stdout)


class TestAuditCommands(unittest.TestCase):

    @patch("carecore_cli.audit.commands.api_get_audit_logs")
    def test_log(self, mock_logs):
        mock_logs.return_value = [{
            "id": 7,
            "created_at": "2026-01-01T10:00:00",
            "action": "read",
            "resource_type": "Patient",
            "resource_id": "123",
            "user_id": "user-1",
            "status_code": 200,
        }]

        result = runner.invoke(app, ["audit", "log", "--resource-type", "Patient"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("Patient/123", result.stdout)
        self.assertEqual(mock_logs.call_args.kwargs["resource_type"], "Patient")

    @patch("carecore_cli.audit.commands.api_verify_audit_log")
    def test_verify_valid_chain(self, mock_verify):
        mock_verify.return_value = {"valid": True, "checked": 12, "broken_at": None}

        result = runner.invoke(app, ["audit", "verify"])

        self.assertEqual(result.exit_code, 0)
        self.assertIn("verified successfully (12 entries)", result.stdout)

    @patch("carecore_cli.audit.commands.api_verify_audit_log")
    def test_verify_broken_chain(self, mock_verify):
        mock_verify.return_value = {"valid": False, "checked": 4, "broken_at": 5}

        result = runner.invoke(app, ["audit", "verify"])

        self.assertEqual(result.exit_code, 1)
        self.assertIn("broken at Log ID 5", result.stdout)


if __name__ == "__main__":
    unittest.main()
