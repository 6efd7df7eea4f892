from __future__ import annotations

import pytest

from common.networks import chain_id_for, is_chain_supported, parse_supported_chains


def test_parse_ids_and_names_to_chain_ids():
    assert parse_supported_chains("4, Goerli") == {4, 5}
    assert parse_supported_chains("rinkeby\n137  80001") == {4, 137, 80001}


def test_parse_empty_or_missing():
    assert parse_supported_chains(None) == set()
    assert parse_supported_chains("") == set()
    assert parse_supported_chains(" , ,") == set()


def test_unknown_chain_name_rejected():
    with pytest.raises(ValueError, match="rinkby"):
        parse_supported_chains("4, rinkby")


def test_chain_names_resolve_to_ids():
    assert chain_id_for("rinkeby") == 4
    assert chain_id_for("80001") == 80001
    assert chain_id_for("unknown-net") is None


def test_is_chain_supported():
    supported = parse_supported_chains("rinkeby, 137")
    assert is_chain_supported(4, supported)
    assert is_chain_supported(137, supported)
    assert not is_chain_supported(1, supported)
    # No restriction configured
    assert is_chain_supported(1, set())
