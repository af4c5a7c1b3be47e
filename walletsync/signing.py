# WalletSync - wallet synchronization backend
# Copyright (C) 2019-2020 The ElectrumSV Developers
# Copyright (C) 2024 The WalletSync Developers
#
# Permission is hereby granted, free of charge, to any person
# obtaining a copy of this software and associated documentation files
# (the "Software"), to deal in the Software without restriction,
# including without limitation the rights to use, copy, modify, merge,
# publish, distribute, sublicense, and/or sell copies of the Software,
# and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be
# included in all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND,
# EXPRESS OR IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF
# MERCHANTABILITY, FITNESS FOR A PARTICULAR PURPOSE AND
# NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT HOLDERS
# BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN
# ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN
# CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

'''What the core knows about how an account's coins are locked.

The keystore hands out signing configurations; the core only ever needs public data from them to
derive the scripts it should look for on the blockchain.
'''

from dataclasses import dataclass, field
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from bitcoinx import (Address, Base58Error, BIP32PublicKey, bip32_key_from_string, hash160,
    P2MultiSig_Output, P2SH_Address, PublicKey, sha256)

from .constants import DerivationPath, ScriptType, SigningConfigurationKind
from .exceptions import InvalidSigningConfiguration
from .i18n import _

if TYPE_CHECKING:
    from .networks import CoinType


@dataclass(frozen=True)
class SigningConfiguration:
    '''One of: an address, a single extended public key, or multisig extended public keys.'''
    kind: SigningConfigurationKind
    address_string: Optional[str] = None
    xpubs: Tuple[str, ...] = field(default_factory=tuple)
    script_type: ScriptType = ScriptType.NONE
    threshold: int = 1

    @classmethod
    def for_address(cls, address_string: str) -> "SigningConfiguration":
        return cls(SigningConfigurationKind.ADDRESS, address_string=address_string)

    @classmethod
    def single_key(cls, xpub: str,
            script_type: ScriptType=ScriptType.P2PKH) -> "SigningConfiguration":
        return cls(SigningConfigurationKind.SINGLE_KEY, xpubs=(xpub,), script_type=script_type)

    @classmethod
    def multisig(cls, xpubs: Sequence[str], threshold: int) -> "SigningConfiguration":
        return cls(SigningConfigurationKind.MULTISIG, xpubs=tuple(xpubs),
            script_type=ScriptType.MULTISIG_P2SH, threshold=threshold)

    def is_address_based(self) -> bool:
        return self.kind == SigningConfigurationKind.ADDRESS

    def extended_public_keys(self) -> Tuple[str, ...]:
        return self.xpubs

    def address(self) -> str:
        if not self.is_address_based() or self.address_string is None:
            raise InvalidSigningConfiguration(_("not an address based configuration"))
        return self.address_string

    def validate(self, coin: "CoinType") -> None:
        '''Raises: InvalidSigningConfiguration'''
        if self.is_address_based():
            self.address_script(coin)
            return
        if not self.xpubs:
            raise InvalidSigningConfiguration(_("no extended public keys"))
        if self.kind == SigningConfigurationKind.SINGLE_KEY:
            if len(self.xpubs) != 1 or self.script_type != ScriptType.P2PKH:
                raise InvalidSigningConfiguration(_("unsupported single key configuration"))
        elif not 1 <= self.threshold <= len(self.xpubs):
            raise InvalidSigningConfiguration(
                _("invalid multisig threshold {} of {}").format(self.threshold, len(self.xpubs)))
        self.master_public_keys()

    def master_public_keys(self) -> List[BIP32PublicKey]:
        keys = []
        for xpub in self.xpubs:
            try:
                key = bip32_key_from_string(xpub)
            except (Base58Error, ValueError) as e:
                raise InvalidSigningConfiguration(
                    _("invalid extended public key: {}").format(e)) from None
            if not isinstance(key, BIP32PublicKey):
                raise InvalidSigningConfiguration(_("not an extended public key"))
            keys.append(key)
        return keys

    def parent_public_keys(self, subpath: DerivationPath) -> List[BIP32PublicKey]:
        keys = []
        for xpub in self.master_public_keys():
            for n in subpath:
                xpub = xpub.child_safe(n)
            keys.append(xpub)
        return keys

    def address_script(self, coin: "CoinType") -> bytes:
        try:
            address = Address.from_string(self.address(), coin.COIN)
        except (Base58Error, ValueError) as e:
            raise InvalidSigningConfiguration(
                _("invalid address for {}: {}").format(coin.NAME, e)) from None
        return address.to_script_bytes()

    def script_for_public_keys(self, coin: "CoinType", public_keys: List[PublicKey]) -> bytes:
        if self.kind == SigningConfigurationKind.SINGLE_KEY:
            return public_keys[0].to_address(coin=coin.COIN).to_script_bytes()
        public_keys_hex = [ public_key.to_hex() for public_key in public_keys ]
        redeem_script = P2MultiSig_Output(sorted(public_keys_hex),
            self.threshold).to_script_bytes()
        return P2SH_Address(hash160(redeem_script), coin.COIN).to_script_bytes()

    def to_json(self) -> Dict[str, Any]:
        if self.is_address_based():
            return { "kind": self.kind.name.lower(), "address": self.address_string }
        return {
            "kind": self.kind.name.lower(),
            "xpubs": list(self.xpubs),
            "scriptType": self.script_type.name.lower(),
            "threshold": self.threshold,
        }


def script_hash_hex(script: bytes) -> str:
    '''The Electrum protocol script hash: the reversed SHA-256 of the output script.'''
    return sha256(script)[::-1].hex()


def derive_account_code(coin: "CoinType",
        configurations: Sequence[SigningConfiguration]) -> str:
    '''The same coin and signing configurations always give the same account code.'''
    payload = json.dumps([ configuration.to_json() for configuration in configurations ],
        sort_keys=True)
    digest = sha256(f'{coin.CODE}:{payload}'.encode()).hex()
    return f'{coin.CODE}-{digest[:16]}'
