"""
Tests for the protocol version catalogue.
"""

import pytest

from mythproto.config import load_version_table
from mythproto.protocol.versions import LATEST_NUMBER, TOKEN_THRESHOLD, ProtocolVersion


class TestCatalogue:
    """Tests for loading and looking up versions."""

    def test_catalogue_complete(self) -> None:
        numbers = [entry.number for entry in load_version_table()]
        assert numbers[:57] == list(range(57))
        assert 23056 in numbers
        assert numbers[-1] == LATEST_NUMBER
        assert len(numbers) == len(set(numbers))

    def test_get_returns_same_instance(self) -> None:
        assert ProtocolVersion.get(77) is ProtocolVersion.get(77)

    def test_get_unknown_raises(self) -> None:
        with pytest.raises(KeyError):
            ProtocolVersion.get(1234)

    def test_find_unknown_returns_none(self) -> None:
        assert ProtocolVersion.find(1234) is None

    def test_coerce(self) -> None:
        v = ProtocolVersion.get(63)
        assert ProtocolVersion.coerce(v) is v
        assert ProtocolVersion.coerce(63) is v

    def test_max_and_min(self) -> None:
        assert ProtocolVersion.max().number == 88
        assert ProtocolVersion.min().number == 0
        assert ProtocolVersion.latest().is_latest


class TestOrdering:
    """Versions compare by catalogue position, not by number."""

    def test_numeric_order(self) -> None:
        assert ProtocolVersion.get(17) < ProtocolVersion.get(60)
        assert ProtocolVersion.get(66) >= ProtocolVersion.get(66)

    def test_branch_revision_between_56_and_57(self) -> None:
        branch = ProtocolVersion.get(23056)
        assert ProtocolVersion.get(56) < branch < ProtocolVersion.get(57)

    def test_latest_is_greatest(self) -> None:
        latest = ProtocolVersion.latest()
        assert all(v <= latest for v in ProtocolVersion.all())

    def test_hashable(self) -> None:
        assert len({ProtocolVersion.get(1), ProtocolVersion.get(1), ProtocolVersion.get(2)}) == 2

    def test_not_equal_to_int(self) -> None:
        assert ProtocolVersion.get(1) != 1


class TestTokens:
    """Handshake tokens from version 62 on."""

    def test_no_token_before_threshold(self) -> None:
        assert ProtocolVersion.get(TOKEN_THRESHOLD - 1).token is None
        assert not ProtocolVersion.get(TOKEN_THRESHOLD - 1).requires_token

    @pytest.mark.parametrize(
        ("number", "token"),
        [(62, "78B5631E"), (66, "0C0FFEE0"), (77, "WindMark"), (88, "XmasGift")],
    )
    def test_known_tokens(self, number: int, token: str) -> None:
        assert ProtocolVersion.get(number).token == token

    def test_release_metadata(self) -> None:
        assert ProtocolVersion.get(77).release == "0.26"
        assert str(ProtocolVersion.get(77)) == "77"
        assert repr(ProtocolVersion.get(77)) == "ProtocolVersion(77)"
