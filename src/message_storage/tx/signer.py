"""Transaction signing.

The Signer is the single owner of the deployer's key. It signs built
transactions and exposes the address; the key itself never leaves the
object, never appears in its repr and cannot be pickled.
"""

from __future__ import annotations

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress
from web3 import Web3

from message_storage.errors import SigningError, ValidationError
from message_storage.types import SignedTransaction, UnsignedTransaction


class Signer:
    """Signs transactions for one account.

    Example:
        >>> signer = Signer.from_key("0x" + "11" * 32)
        >>> signed = signer.sign(unsigned_tx)
    """

    __slots__ = ("_account",)

    def __init__(self, account: LocalAccount) -> None:
        self._account = account

    @classmethod
    def from_key(cls, private_key: str) -> "Signer":
        # Sanitize private key errors to prevent key leakage in stack traces
        try:
            return cls(Account.from_key(private_key))
        except Exception:
            raise ValidationError("Invalid private key format (key not shown for security)") from None

    @classmethod
    def from_mnemonic(cls, mnemonic: str, account_index: int = 0) -> "Signer":
        """Derive the account at ``m/44'/60'/0'/0/{account_index}``."""
        Account.enable_unaudited_hdwallet_features()
        try:
            account = Account.from_mnemonic(
                mnemonic, account_path=f"m/44'/60'/0'/0/{account_index}"
            )
        except Exception:
            raise ValidationError("Invalid mnemonic (phrase not shown for security)") from None
        return cls(account)

    @property
    def address(self) -> ChecksumAddress:
        return self._account.address

    def sign(self, tx: UnsignedTransaction) -> SignedTransaction:
        """Sign ``tx``.

        Raises:
            SigningError: If the transaction is malformed
        """
        if tx.gas_limit <= 0:
            raise SigningError("gas limit must be positive", details={"nonce": tx.nonce})
        if tx.chain_id <= 0:
            raise SigningError("chain id must be positive", details={"nonce": tx.nonce})
        fees = tx.fees
        prices = (
            (fees.gas_price,)
            if fees.is_legacy
            else (fees.max_fee_per_gas, fees.max_priority_fee_per_gas)
        )
        if any(price is None or price < 0 for price in prices):
            raise SigningError(
                "fee parameters are missing or negative", details={"nonce": tx.nonce}
            )
        if tx.to is not None and not Web3.is_checksum_address(tx.to):
            raise SigningError("recipient must be a checksum address", details={"to": tx.to})
        try:
            signed = self._account.sign_transaction(tx.to_tx_params())
        except (TypeError, ValueError) as e:
            raise SigningError(f"Cannot sign transaction: {e}", details={"nonce": tx.nonce}) from e
        return SignedTransaction(
            nonce=tx.nonce,
            tx_hash=Web3.to_hex(signed.hash),
            raw=bytes(signed.raw_transaction),
            fees=tx.fees,
            unsigned=tx,
        )

    def __repr__(self) -> str:
        return f"Signer(address={self.address})"

    def __getstate__(self):
        raise TypeError("Signer holds key material and cannot be serialized")
