"""Tests for configuration helpers."""

import json

import boto3

from checkout_core.config import Config


class FakeSecretsManager:
    def __init__(self, secret):
        self.secret = secret
        self.requested = []

    def get_secret_value(self, SecretId):
        self.requested.append(SecretId)
        return {"SecretString": json.dumps(self.secret)}


class TestRedisUrl:
    def test_tls_with_token(self, monkeypatch):
        monkeypatch.setattr(Config, "REDIS_SSL", True)
        monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", "s3cret")
        monkeypatch.setattr(Config, "REDIS_HOST", "cache.internal")
        monkeypatch.setattr(Config, "REDIS_PORT", 6380)
        monkeypatch.setattr(Config, "REDIS_DB", 2)

        assert Config.redis_url() == "rediss://:s3cret@cache.internal:6380/2"

    def test_plain_without_token(self, monkeypatch):
        monkeypatch.setattr(Config, "REDIS_SSL", False)
        monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", None)
        monkeypatch.setattr(Config, "REDIS_HOST", "localhost")
        monkeypatch.setattr(Config, "REDIS_PORT", 6379)
        monkeypatch.setattr(Config, "REDIS_DB", 0)

        assert Config.redis_url() == "redis://localhost:6379/0"


class TestLoadRedisSecrets:
    def test_loads_token_and_endpoint(self, monkeypatch):
        secrets = FakeSecretsManager({"auth_token": "from-secrets", "endpoint": "cache.aws"})
        monkeypatch.setattr(boto3, "client", lambda service, region_name=None: secrets)
        monkeypatch.setenv("REDIS_SECRET_NAME", "checkout/redis")
        monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", None)
        monkeypatch.setattr(Config, "REDIS_HOST", "localhost")

        Config.load_redis_secrets()

        assert secrets.requested == ["checkout/redis"]
        assert Config.REDIS_AUTH_TOKEN == "from-secrets"
        assert Config.REDIS_HOST == "cache.aws"

    def test_skipped_without_secret_name(self, monkeypatch):
        monkeypatch.delenv("REDIS_SECRET_NAME", raising=False)
        monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", None)
        secrets = FakeSecretsManager({"auth_token": "unused"})
        monkeypatch.setattr(boto3, "client", lambda service, region_name=None: secrets)

        Config.load_redis_secrets()

        assert secrets.requested == []

        assert Config.REDIS_AUTH_TOKEN is None

    def test_secrets_failure_is_tolerated(self, monkeypatch):
        def broken_client(service, region_name=None):
            raise RuntimeError("no credentials")

        monkeypatch.setattr(boto3, "client", broken_client)
        monkeypatch.setenv("REDIS_SECRET_NAME", "checkout/redis")
        monkeypatch.setattr(Config, "REDIS_AUTH_TOKEN", None)

        Config.load_redis_secrets()

        assert Config.REDIS_AUTH_TOKEN is None
