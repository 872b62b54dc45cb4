import pytest
from pydantic import ValidationError

from bookshelf.api.schemas import (
    BookCreateFields,
    Envelope,
    ErrorBody,
    RegisterRequest,
    UserResponse,
    dump,
    parse_rating,
)
from bookshelf.config import Settings
from bookshelf.storage.models import User

ACCESS = "schema-access-secret-0123456789-abcdefghij"
REFRESH = "schema-refresh-secret-0123456789-abcdefghi"


class TestRegisterRequest:
    def test_normalizes_email_and_name(self):
        req = RegisterRequest(name="  Ada   Reader ", email=" Ada@Example.COM ", password="Secret123")
        assert req.name == "Ada Reader"
        assert req.email == "ada@example.com"

    def test_strips_zero_width_characters(self):
        req = RegisterRequest(name="Ada\u200b Reader", email="ada@example.com", password="Secret123")
        assert req.name == "Ada Reader"

    @pytest.mark.parametrize(
        "email", ["plain", "a@b", "a b@example.com", "ada@-example.com", "x" * 65 + "@example.com"]
    )
    def test_rejects_bad_email(self, email):
        with pytest.raises(ValidationError):
            RegisterRequest(name="Ada Reader", email=email, password="Secret123")

    @pytest.mark.parametrize("password", ["Short1", "nouppercase1", "NOLOWERCASE1", "NoDigitsHere", "A1a" * 43])
    def test_rejects_weak_password(self, password):
        with pytest.raises(ValidationError):
            RegisterRequest(name="Ada Reader", email="ada@example.com", password=password)


class TestBookFields:
    def test_create_requires_title_and_author(self):
        with pytest.raises(ValidationError):
            BookCreateFields(title="Dune")
        fields = BookCreateFields(title=" Dune ", author="Frank Herbert", rating=5)
        assert fields.title == "Dune"

    def test_parse_rating(self):
        assert parse_rating(None) is None
        assert parse_rating("  ") is None
        assert parse_rating("4.5") == 4.5
        with pytest.raises(ValueError):
            parse_rating("five")


class TestEnvelope:
    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id

    def test_user_response_is_camel_case(self):
        user = User(id="u1", name="Ada Reader", email="ada@example.com")
        data = dump(UserResponse.from_user(user))
        assert data["emailVerified"] is False
        assert data["isAdmin"] is False
        assert "email_verified" not in data


class TestSettings:
    def test_secrets_must_be_long_enough(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret="short", jwt_refresh_secret=REFRESH)

    def test_secrets_must_differ(self):
        with pytest.raises(ValidationError):
            Settings(jwt_access_secret=ACCESS, jwt_refresh_secret=ACCESS)

    def test_missing_secrets_are_generated_and_persisted(self, tmp_path):
        first = Settings(state_dir=str(tmp_path))
        second = Settings(state_dir=str(tmp_path))

        assert len(first.jwt_access_secret) >= 32
        assert first.jwt_access_secret != first.jwt_refresh_secret
        assert second.jwt_access_secret == first.jwt_access_secret
        assert (tmp_path / ".jwt_access_secret").read_text() == first.jwt_access_secret

    def test_from_env_reads_named_variables(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("FRONTEND_URL", "https://books.example/")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 5
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]
        assert settings.frontend_url == "https://books.example"
