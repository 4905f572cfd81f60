"""Couche service du règlement des vendeurs (virements Stripe Connect).

Rôles:
- Décoder les instructions de partage portées par les métadonnées de la session.
- Émettre un virement par instruction, en parallèle mais avec une concurrence bornée.
- Réserver chaque virement dans le registre avant l'appel Stripe et ne jamais
  rejouer un virement déjà réussi (clé d'idempotence par (order_id, card_id, tentative)).
- Agréger le résultat: un échec n'annule ni ne bloque les autres virements;
  un règlement partiel est un résultat normal, visible par l'opérateur.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from backend.config import SETTLEMENT_MAX_CONCURRENCY
from backend.payments import stripe_client
from backend.payments.fees import to_minor_units, to_money
from backend.payments.metadata import SettlementInstructionSet, SplitInstruction
from backend.orders import repository as orders_repository
from backend.orders.models import OrderNotFound
from . import repository

logger = logging.getLogger(__name__)


class LedgerUnavailable(RuntimeError):
    """Le registre n'a pas pu être lu/écrit: le règlement doit être rejoué (redélivrance)."""


@dataclass
class TransferOutcome:
    card_id: str
    destination: str
    amount: str
    status: str
    transfer_id: str = ""
    error: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {
            "card_id": self.card_id,
            "destination": self.destination,
            "amount": self.amount,
            "status": self.status,
            "transfer_id": self.transfer_id,
            "error": self.error,
        }


@dataclass
class SettlementResult:
    order_id: str
    succeeded: List[TransferOutcome] = field(default_factory=list)
    failed: List[TransferOutcome] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "succeeded": [o.as_dict() for o in self.succeeded],
            "failed": [o.as_dict() for o in self.failed],
            "skipped": list(self.skipped),
        }


# module backend.settlement.service
def idempotency_key(order_id: str, card_id: str, attempt: int = 1) -> str:
    return f"transfer:{order_id}:{card_id}:v{attempt}"

def _claim(order_id: str, payment_intent_id: str, ins: SplitInstruction) -> Optional[Dict[str, Any]]:
    try:
        return repository.claim(
            order_id=order_id,
            card_id=ins.card_id,
            payment_intent_id=payment_intent_id,
            destination=ins.stripe_account,
            amount=f"{ins.amount:.2f}",
            idempotency_key=idempotency_key(order_id, ins.card_id),
        )
    except Exception as e:
        raise LedgerUnavailable(f"claim order={order_id} card={ins.card_id}: {e}") from e

def _transfer(order_id: str, payment_intent_id: str, ins: SplitInstruction) -> TransferOutcome:
    """Virement d'une instruction (bloquant: exécuté dans un thread)."""
    amount = f"{ins.amount:.2f}"
    entry = _claim(order_id, payment_intent_id, ins)
    if entry and entry.get("status") == repository.SUCCEEDED:
        logger.info("settlement.service transfer already settled order=%s card=%s", order_id, ins.card_id)
        return TransferOutcome(ins.card_id, ins.stripe_account, amount, "already_settled",
                               transfer_id=str(entry.get("transfer_id") or ""))

    attempt = int((entry or {}).get("attempt") or 1)
    try:
        transfer = stripe_client.create_transfer(
            amount_minor=to_minor_units(ins.amount),
            destination=ins.stripe_account,
            description=f"Card sale: {ins.card_id}",
            metadata={"cardId": ins.card_id, "orderId": order_id},
            idempotency_key=idempotency_key(order_id, ins.card_id, attempt),
            transfer_group=order_id or None,
        )
    except Exception as e:
        logger.exception("settlement.service transfer failed order=%s card=%s destination=%s attempt=%s",
                         order_id, ins.card_id, ins.stripe_account, attempt)
        next_key = idempotency_key(order_id, ins.card_id, attempt + 1) if stripe_client.is_rejection(e) else None
        try:
            repository.mark_failed(order_id, ins.card_id, str(e), attempt=attempt, next_key=next_key)
        except Exception as ledger_error:
            raise LedgerUnavailable(f"mark_failed order={order_id} card={ins.card_id}") from ledger_error
        return TransferOutcome(ins.card_id, ins.stripe_account, amount, "failed", error=str(e))

    transfer_id = str(transfer.get("id") or "")
    logger.info("settlement.service transfer ok order=%s card=%s transfer=%s amount=%s",
                order_id, ins.card_id, transfer_id, amount)
    try:
        repository.mark_succeeded(order_id, ins.card_id, transfer_id)
    except Exception as e:
        # Le virement existe: un rejeu avec la même clé renverra ce même virement
        raise LedgerUnavailable(f"mark_succeeded order={order_id} card={ins.card_id}") from e
    return TransferOutcome(ins.card_id, ins.stripe_account, amount, "succeeded", transfer_id=transfer_id)

async def settle(
    metadata: Dict[str, Any],
    *,
    payment_intent_id: str = "",
    max_concurrency: Optional[int] = None,
) -> SettlementResult:
    """
    Règle les vendeurs d'une commande d'achat à partir des métadonnées de la session.
    - Entrées corrompues, montant nul ou destination absente: ignorées (skipped)
    - Concurrence bornée par SETTLEMENT_MAX_CONCURRENCY (asyncio.Semaphore)
    - Tous les virements sont attendus; les échecs sont agrégés dans `failed`
    Lève LedgerUnavailable (après la fin de tous les virements) si le registre est inaccessible.
    """
    instruction_set = SettlementInstructionSet.decode(metadata)
    order_id = instruction_set.order_id
    result = SettlementResult(order_id=order_id, skipped=list(instruction_set.skipped))
    for skip in instruction_set.skipped:
        logger.warning("settlement.service skipped entry order=%s index=%s reason=%s",
                       order_id, skip.get("index"), skip.get("reason"))
    if not order_id:
        logger.error("settlement.service no orderId in metadata, nothing settled")
        return result
    if not instruction_set.instructions:
        return result

    sem = asyncio.Semaphore(max_concurrency or SETTLEMENT_MAX_CONCURRENCY)

    async def _guarded(ins: SplitInstruction) -> TransferOutcome:
        async with sem:
            return await asyncio.to_thread(_transfer, order_id, payment_intent_id, ins)

    outcomes = await asyncio.gather(
        *(_guarded(ins) for ins in instruction_set.instructions),
        return_exceptions=True,
    )

    ledger_errors: List[BaseException] = []
    for ins, outcome in zip(instruction_set.instructions, outcomes):
        if isinstance(outcome, LedgerUnavailable):
            ledger_errors.append(outcome)
            continue
        if isinstance(outcome, BaseException):
            logger.error("settlement.service unexpected error order=%s card=%s: %s", order_id, ins.card_id, outcome)
            result.failed.append(TransferOutcome(ins.card_id, ins.stripe_account, f"{ins.amount:.2f}", "failed",
                                                 error=str(outcome)))
            continue
        if outcome.status == "failed":
            result.failed.append(outcome)
        else:
            result.succeeded.append(outcome)

    logger.info("settlement.service order=%s succeeded=%s failed=%s skipped=%s",
                order_id, len(result.succeeded), len(result.failed), len(result.skipped))
    if ledger_errors:
        raise LedgerUnavailable(f"{len(ledger_errors)} écriture(s) du registre en échec pour order={order_id}") from ledger_errors[0]
    return result

def record_retained_items(order_id: str, payment_intent_id: str, items: Iterable[Dict[str, Any]],
                          settled_card_ids: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Trace dans le registre les articles facturés mais sans virement (vendeur sans destination active).
    - La plateforme conserve 100% de ces ventes jusqu'à régularisation manuelle.
    """
    settled = {str(c) for c in settled_card_ids}
    rows = [
        {
            "order_id": order_id,
            "card_id": str(it.get("card_id")),
            "payment_intent_id": payment_intent_id,
            "destination": "",
            "amount": f"{to_money(it.get('price')):.2f}",
            "idempotency_key": idempotency_key(order_id, str(it.get("card_id"))),
        }
        for it in items
        if it.get("card_id") and str(it.get("card_id")) not in settled
    ]
    if rows:
        logger.warning("settlement.service order=%s retained %s item(s) without payout destination", order_id, len(rows))
    return repository.record_retained(rows)

async def retry_settlement(order_id: str) -> SettlementResult:
    """
    Action opérateur: rejoue le règlement d'une commande payée.
    - Relit la session Stripe via le payment_intent_id enregistré sur la commande
    - Les virements déjà réussis ne sont pas rejoués (registre + idempotence Stripe)
    """
    order = orders_repository.get_order(order_id)
    if not order:
        raise OrderNotFound(order_id)
    payment_intent_id = order.get("payment_intent_id") or ""
    if not payment_intent_id:
        raise ValueError("Commande sans paiement confirmé (payment_intent_id manquant)")
    session = await asyncio.to_thread(stripe_client.find_session_by_payment_intent, payment_intent_id)
    if not session:
        raise ValueError("Session Stripe introuvable pour ce paiement")
    return await settle(session.get("metadata") or {}, payment_intent_id=payment_intent_id)

def list_settlements(status: Optional[str] = None, order_id: Optional[str] = None, limit: int = 200) -> List[Dict[str, Any]]:
    return repository.list_entries(status=status, order_id=order_id, limit=limit)
