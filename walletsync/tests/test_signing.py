from bitcoinx import (Address, Bitcoin, BitcoinRegtest, BIP32PrivateKey, hash160,
    P2MultiSig_Output)
import pytest

from walletsync.constants import CHANGE_SUBPATH, RECEIVING_SUBPATH
from walletsync.exceptions import InvalidSigningConfiguration
from walletsync.networks import SVMainnet, SVRegTestnet
from walletsync.signing import derive_account_code, script_hash_hex, SigningConfiguration


MASTER_1 = BIP32PrivateKey.from_seed(bytes(range(32)), Bitcoin)
MASTER_2 = BIP32PrivateKey.from_seed(bytes(range(1, 33)), Bitcoin)
XPUB_1 = MASTER_1.public_key.to_extended_key_string()
XPUB_2 = MASTER_2.public_key.to_extended_key_string()


def test_script_hash() -> None:
    script = Address.from_string("1B1nRdgJaa7TaA9FeKsUWkHb3fWjcmCuZm", Bitcoin).to_script_bytes()
    assert script.hex() == "76a91462e907b15cbf27d5425399ebf6f0fb50ebb88f1888ac"
    assert script_hash_hex(script) == \
        "8b01df4e368ea28f8dc0423bcf7a4923e3a12d307c875e47a0cfbf90b5c39161"


def test_single_key_scripts() -> None:
    configuration = SigningConfiguration.single_key(XPUB_1)
    configuration.validate(SVMainnet)
    assert not configuration.is_address_based()
    assert configuration.extended_public_keys() == (XPUB_1,)

    parent_keys = configuration.parent_public_keys(CHANGE_SUBPATH)
    script = configuration.script_for_public_keys(SVMainnet,
        [ key.child_safe(3) for key in parent_keys ])
    expected = MASTER_1.public_key.child_safe(1).child_safe(3).to_address(coin=Bitcoin)
    assert script == expected.to_script_bytes()


def test_multisig_scripts_sort_public_keys() -> None:
    configuration = SigningConfiguration.multisig([ XPUB_1, XPUB_2 ], 2)
    configuration.validate(SVMainnet)
    public_keys = [ key.child_safe(0) for key in
        configuration.parent_public_keys(RECEIVING_SUBPATH) ]
    script = configuration.script_for_public_keys(SVMainnet, public_keys)

    redeem_script = P2MultiSig_Output(sorted(key.to_hex() for key in public_keys),
        2).to_script_bytes()
    assert script == bytes([0xa9, 0x14]) + hash160(redeem_script) + bytes([0x87])
    # Cosigner order does not change the script.
    assert SigningConfiguration.multisig([ XPUB_2, XPUB_1 ], 2).script_for_public_keys(
        SVMainnet, list(reversed(public_keys))) == script


def test_address_configuration() -> None:
    address = MASTER_1.public_key.child_safe(7).to_address(coin=BitcoinRegtest)
    configuration = SigningConfiguration.for_address(address.to_string())
    configuration.validate(SVRegTestnet)
    assert configuration.is_address_based()
    assert configuration.address_script(SVRegTestnet) == address.to_script_bytes()


@pytest.mark.parametrize("configuration", (
    SigningConfiguration.single_key("xpub-that-is-not-one"),
    SigningConfiguration.single_key(MASTER_1.to_extended_key_string()),
    SigningConfiguration.multisig([ XPUB_1, XPUB_2 ], 3),
    SigningConfiguration.multisig([ XPUB_1, XPUB_2 ], 0),
    SigningConfiguration.multisig([], 1),
    SigningConfiguration.for_address("address-with-0OIl"),
))
def test_invalid_configurations(configuration) -> None:
    with pytest.raises(InvalidSigningConfiguration):
        configuration.validate(SVMainnet)


def test_not_address_based() -> None:
    with pytest.raises(InvalidSigningConfiguration):
        SigningConfiguration.single_key(XPUB_1).address()


def test_account_code_is_stable() -> None:
    configurations = [ SigningConfiguration.single_key(XPUB_1) ]
    code = derive_account_code(SVMainnet, configurations)
    assert code.startswith("bsv-")
    assert code == derive_account_code(SVMainnet, [ SigningConfiguration.single_key(XPUB_1) ])
    assert code != derive_account_code(SVRegTestnet, configurations)
    assert code != derive_account_code(SVMainnet, [ SigningConfiguration.single_key(XPUB_2) ])
