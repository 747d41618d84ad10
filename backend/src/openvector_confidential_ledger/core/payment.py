from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Dict

from typing_extensions import override
from web3 import Account, HTTPProvider, Web3
from web3.exceptions import TransactionNotFound
from web3.middleware import SignAndSendRawMiddlewareBuilder
from web3.types import TxParams, Wei

from openvector_confidential_ledger.common.errors import FailedTransfer, TransferPending
from openvector_confidential_ledger.common.logger import LogMessage, Logger


class IPaymentGateway(ABC):
    @abstractmethod
    def transfer(self, to: str, amount: int) -> None:
        """Pay a plaintext amount to an identity.

        Must raise FailedTransfer on failure. The engine does not retry a failed
        transfer, the caller decides. A transfer that was submitted but whose
        outcome is unknown raises TransferPending, it must not be resent.
        """
        pass

    @abstractmethod
    def confirm(self, reference: str) -> bool:
        """Whether a pending transfer settled, False if it is known to have failed.

        Raises:
            TransferPending: If the outcome is still unknown.
        """
        pass


class InMemoryPaymentGateway(IPaymentGateway):
    """Pays out of a funded escrow balance kept in memory."""

    __slots__ = ("_escrow", "_balances", "_lock", "_logger")

    _escrow: int
    _balances: Dict[str, int]
    _lock: Lock
    _logger: Logger

    def __init__(self, escrow_balance: int, logger: Logger):
        self._escrow = escrow_balance
        self._balances = {}
        self._lock = Lock()
        self._logger = logger

    @property
    def escrow_balance(self) -> int:
        return self._escrow

    def fund(self, amount: int) -> None:
        if amount < 0:
            raise ValueError("Funding amount must not be negative")
        with self._lock:
            self._escrow += amount

    def balance_of(self, identity: str) -> int:
        with self._lock:
            return self._balances.get(identity, 0)

    @override
    def transfer(self, to: str, amount: int) -> None:
        with self._lock:
            if amount < 0:
                raise FailedTransfer(f"Invalid transfer amount {amount}")
            if amount > self._escrow:
                self._logger.warning(
                    LogMessage(
                        message="Transfer exceeds escrow balance",
                        structured_log_message_data={"to": to},
                    )
                )
                raise FailedTransfer(f"Insufficient escrow balance to pay {to}")
            self._escrow -= amount
            self._balances[to] = self._balances.get(to, 0) + amount
        self._logger.info(
            LogMessage(
                message="Transfer executed",
                structured_log_message_data={"to": to},
            )
        )

    @override
    def confirm(self, reference: str) -> bool:
        # in memory transfers settle or fail on the spot, none is ever pending
        raise FailedTransfer(f"Unknown transfer reference {reference}")


@dataclass(frozen=True, slots=True)
class EthereumPaymentConfig:
    """Configuration for native value transfers on an ethereum network"""

    provider: str
    owner_account_private_key: str
    # wei paid per unit of the disclosed amount
    wei_per_unit: int = 1
    receipt_timeout: float = 120.0


class EthereumPaymentGateway(IPaymentGateway):
    """Sends native value transfers signed by the owner account.

    Once `send_transaction` returned, the transaction is on the network. A
    failure while waiting for its receipt leaves the outcome unknown and is
    reported as TransferPending with the tx hash as reference.
    """

    __slots__ = ("_web3", "_config", "_logger")

    _web3: Web3
    _config: EthereumPaymentConfig
    _logger: Logger

    def __init__(
        self,
        config: EthereumPaymentConfig,
        logger: Logger,
        web3: Web3 | None = None,
    ):
        self._config = config
        self._logger = logger
        self._web3 = web3 if web3 is not None else Web3(HTTPProvider(config.provider))
        account = Account.from_key(config.owner_account_private_key)
        self._web3.middleware_onion.inject(
            SignAndSendRawMiddlewareBuilder.build(account), layer=0
        )
        self._web3.eth.default_account = account.address

    @override
    def transfer(self, to: str, amount: int) -> None:
        if amount < 0:
            raise FailedTransfer(f"Invalid transfer amount {amount}")
        try:
            tx: TxParams = {
                "to": Web3.to_checksum_address(to),
                "value": Wei(amount * self._config.wei_per_unit),
            }
            tx_hash = self._web3.eth.send_transaction(tx)
        except Exception as e:
            self._logger.error(
                LogMessage(
                    message="Error submitting transfer transaction",
                    structured_log_message_data={"to": to},
                    error=e,
                )
            )
            raise FailedTransfer(f"Transfer to {to} failed: {e}") from e

        reference = Web3.to_hex(tx_hash)
        try:
            receipt = self._web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._config.receipt_timeout
            )
        except Exception as e:
            self._logger.warning(
                LogMessage(
                    message="Transfer transaction submitted, receipt unavailable",
                    structured_log_message_data={"to": to, "tx_hash": reference},
                    error=e,
                )
            )
            raise TransferPending(
                f"Transfer to {to} was submitted as {reference}, outcome unknown: {e}",
                reference,
            ) from e
        if not self._settled(reference, receipt):
            raise FailedTransfer(f"Transfer to {to} reverted")

    @override
    def confirm(self, reference: str) -> bool:
        try:
            receipt = self._web3.eth.get_transaction_receipt(reference)
        except TransactionNotFound as e:
            raise TransferPending(f"Transfer {reference} is not mined yet", reference) from e
        except Exception as e:
            self._logger.warning(
                LogMessage(
                    message="Could not fetch transfer receipt",
                    structured_log_message_data={"tx_hash": reference},
                    error=e,
                )
            )
            raise TransferPending(
                f"Could not fetch the receipt of transfer {reference}: {e}", reference
            ) from e
        return self._settled(reference, receipt)

    def _settled(self, reference: str, receipt) -> bool:
        if receipt["status"] != 1:
            self._logger.error(
                LogMessage(
                    message="Transfer transaction reverted",
                    structured_log_message_data={"tx_hash": reference},
                )
            )
            return False
        self._logger.info(
            LogMessage(
                message="Transfer transaction mined",
                structured_log_message_data={"tx_hash": reference},
            )
        )
        return True
