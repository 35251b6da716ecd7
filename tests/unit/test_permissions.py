"""
test_permissions.py - Unit tests for manager and bot permissions

auto_lever / auto_delever are allowed only when any_bot_allowed is on AND the
caller is whitelisted. lever / delever are manager-only. The manager holds no
implicit bot rights.
"""

import pytest
from decimal import Decimal

from levindex import Unauthorized


def auto_lever(market, index, caller, quantity="100"):
    return market.protocol.auto_lever(index, caller, "DAI", "WETH", Decimal(quantity), Decimal("0"))


def auto_delever(market, index, caller, quantity="0.05"):
    return market.protocol.auto_delever(index, caller, "WETH", "DAI", Decimal(quantity), Decimal("0"))


def configure(market, index, any_bot, whitelist):
    market.protocol.update_any_bot_allowed(index, "manager", any_bot)
    for bot, allowed in whitelist.items():
        market.protocol.set_caller_permission(index, "manager", bot, allowed)


# ============================================================================
# BOT MATRIX
# ============================================================================

class TestBotMatrix:

    @pytest.mark.parametrize("any_bot,whitelisted,allowed", [
        (False, False, False),
        (False, True, False),
        (True, False, False),
        (True, True, True),
    ])
    def test_auto_lever(self, issued_index, any_bot, whitelisted, allowed):
        market, index = issued_index
        configure(market, index, any_bot, {"bot": whitelisted})

        if allowed:
            result = auto_lever(market, index, "bot")
            assert result.borrowed == Decimal("100")
        else:
            with pytest.raises(Unauthorized, match="Must be the authorized caller"):
                auto_lever(market, index, "bot")
            assert market.pool.debt("DAI", index) == Decimal("0")

    @pytest.mark.parametrize("any_bot,whitelisted,allowed", [
        (False, True, False),
        (True, False, False),
        (True, True, True),
    ])
    def test_auto_delever(self, issued_index, any_bot, whitelisted, allowed):
        market, index = issued_index
        market.protocol.lever(index, "manager", "DAI", "WETH", Decimal("100"), Decimal("0"))
        configure(market, index, any_bot, {"bot": whitelisted})

        if allowed:
            result = auto_delever(market, index, "bot")
            assert result.repaid == Decimal("50")
        else:
            with pytest.raises(Unauthorized, match="Must be the authorized caller"):
                auto_delever(market, index, "bot")

    def test_manager_has_no_bot_rights(self, issued_index):
        market, index = issued_index
        configure(market, index, True, {"bot": True})
        with pytest.raises(Unauthorized, match="Must be the authorized caller"):
            auto_lever(market, index, "manager")

    def test_unlisted_bot(self, issued_index):
        market, index = issued_index
        configure(market, index, True, {"bot": True})
        with pytest.raises(Unauthorized):
            auto_lever(market, index, "other_bot")

    def test_revoked_bot(self, issued_index):
        market, index = issued_index
        configure(market, index, True, {"bot": True})
        auto_lever(market, index, "bot")
        market.protocol.set_caller_permission(index, "manager", "bot", False)
        with pytest.raises(Unauthorized):
            auto_lever(market, index, "bot")

    def test_global_switch_off(self, issued_index):
        market, index = issued_index
        configure(market, index, True, {"bot": True})
        market.protocol.update_any_bot_allowed(index, "manager", False)
        with pytest.raises(Unauthorized):
            auto_lever(market, index, "bot")


# ============================================================================
# MANAGER
# ============================================================================

class TestManagerOnly:

    def test_bot_cannot_lever(self, issued_index):
        market, index = issued_index
        configure(market, index, True, {"bot": True})
        with pytest.raises(Unauthorized, match="Must be the manager of ETH3X"):
            market.protocol.lever(index, "bot", "DAI", "WETH", Decimal("100"), Decimal("0"))

    def test_only_manager_toggles_bots(self, issued_index):
        market, index = issued_index
        with pytest.raises(Unauthorized):
            market.protocol.update_any_bot_allowed(index, "alice", True)
        assert not market.protocol.leverage.get_config(index).any_bot_allowed

    def test_only_manager_whitelists(self, issued_index):
        market, index = issued_index
        with pytest.raises(Unauthorized):
            market.protocol.set_caller_permission(index, "bot", "bot", True)
        assert market.protocol.leverage.get_config(index).caller_permission == {}

    def test_only_manager_enables_pairs(self, issued_index):
        market, index = issued_index
        with pytest.raises(Unauthorized):
            market.protocol.leverage.add_enabled_pair(index, "alice", "WBTC", "DAI")
