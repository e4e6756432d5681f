"""
Tests for caller identity resolution
"""

import pytest

from bank_ledger.identity import (
    AuthenticationError, CallerIdentity, StaticIdentityProvider
)


class TestStaticIdentityProvider:
    """Test token lookup"""

    def setup_method(self):
        self.teller = CallerIdentity(user_id="teller-1", email="teller@bank.example",
                                     roles=frozenset({"teller"}))
        self.provider = StaticIdentityProvider({"tok-teller": self.teller})

    def test_authenticate_plain_and_bearer_token(self):
        assert self.provider.authenticate("tok-teller") == self.teller
        assert self.provider.authenticate("Bearer tok-teller") == self.teller

    @pytest.mark.parametrize("token", ["", "Bearer ", "tok-unknown", "bearer tok-teller"])
    def test_unknown_token_rejected(self, token):
        with pytest.raises(AuthenticationError):
            self.provider.authenticate(token)

    def test_register(self):
        auditor = CallerIdentity(user_id="auditor-1", roles=frozenset({"auditor"}))
        self.provider.register("tok-audit", auditor)
        assert self.provider.authenticate("Bearer tok-audit").has_role("auditor")


class TestCallerIdentity:
    """Test identity value object"""

    def test_roles(self):
        identity = CallerIdentity(user_id="u-1", roles=frozenset({"teller"}))
        assert identity.has_role("teller")
        assert not identity.has_role("admin")
        assert not CallerIdentity(user_id="u-2").has_role("teller")

    def test_identity_is_immutable(self):
        identity = CallerIdentity(user_id="u-1")
        with pytest.raises(AttributeError):
            identity.user_id = "someone-else"
