"""
Tests for configuration parsing and validation.
"""

from datetime import timedelta

from src.config.settings import Settings


class TestRequiredFields:

    def test_nothing_required_in_mock_modes(self):
        settings = Settings(snowflake_mock_mode=True, twilio_mock_mode=True)
        assert settings.validate_required_fields() == []

    def test_real_twilio_needs_credentials_and_sender(self):
        settings = Settings(
            snowflake_mock_mode=True,
            twilio_mock_mode=False,
            twilio_account_sid="",
            twilio_auth_token="",
        )
        missing = settings.validate_required_fields()
        assert "TWILIO_ACCOUNT_SID" in missing
        assert "TWILIO_AUTH_TOKEN" in missing
        assert "TWILIO_FROM_NUMBER or TWILIO_MESSAGING_SERVICE_SID" in missing

    def test_messaging_service_satisfies_sender_requirement(self):
        settings = Settings(
            snowflake_mock_mode=True,
            twilio_account_sid="AC123",
            twilio_auth_token="secret",
            twilio_messaging_service_sid="MG123",
        )
        assert settings.validate_required_fields() == []

    def test_snowflake_accepts_private_key_instead_of_password(self):
        settings = Settings(
            twilio_mock_mode=True,
            snowflake_account="acct",
            snowflake_user="svc",
            snowflake_password="",
            snowflake_private_key_base64="LS0tLS1CRUdJTg==",
        )
        assert settings.validate_required_fields() == []


class TestDerivedValues:

    def test_api_keys_are_split_and_trimmed(self):
        settings = Settings(api_keys=" a , b,,c ")
        assert settings.api_keys_list == ["a", "b", "c"]

    def test_wildcard_cors(self):
        assert Settings(cors_origins="*").cors_origins_list == ["*"]

    def test_dispatch_durations(self):
        settings = Settings(dispatch_claim_ttl_minutes=15, dispatch_stale_after_hours=24)
        assert settings.dispatch_claim_ttl == timedelta(minutes=15)
        assert settings.dispatch_stale_after == timedelta(hours=24)

    def test_zero_stale_cutoff_disables_expiry(self):
        assert Settings(dispatch_stale_after_hours=0).dispatch_stale_after is None
