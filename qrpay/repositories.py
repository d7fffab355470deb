"""
Storage contracts used by the settlement engine.

The Django implementations are used by the running service; the in-memory
ones back unit tests and local experiments without a database.
"""
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from django.db import transaction
from django.db.models import Count, Max, Q, Sum
from django.utils import timezone
from loguru import logger

from .exceptions import AlreadyFinalizedError, SessionNotFoundError
from .models import Merchant, PaymentSequence, PaymentSession, PriceRecord


REFERENCE_PREFIX = 'payment_'

# Builds an unsaved session for an allocated (reference, sequence) pair.
SessionBuilder = Callable[[str, int], PaymentSession]


def format_reference(sequence: int) -> str:
    return f'{REFERENCE_PREFIX}{sequence}'


class SessionRepository(ABC):

    @abstractmethod
    def find_by_reference(self, reference: str) -> Optional[PaymentSession]:
        pass

    @abstractmethod
    def create(self, build: SessionBuilder) -> PaymentSession:
        """
        Allocate the next reference and persist the session built for it.

        Allocation and insert happen as one serialized step: if ``build``
        raises, nothing is stored and the sequence number is not consumed.
        """
        pass

    @abstractmethod
    def update_status(self, reference: str, status: str, **fields: Any) -> PaymentSession:
        """
        Move a PENDING session to ``status``.

        Raises:
            SessionNotFoundError: if the reference is unknown
            AlreadyFinalizedError: if the session already left PENDING
        """
        pass

    @abstractmethod
    def attach_transaction(self, reference: str, **fields: Any) -> PaymentSession:
        """
        Record settlement details on a session whatever its status.

        Raises:
            SessionNotFoundError: if the reference is unknown
        """
        pass

    @abstractmethod
    def list_recent(self, merchant_id: Optional[int] = None, limit: int = 50) -> List[PaymentSession]:
        pass

    @abstractmethod
    def merchant_totals(self, merchant_id: int) -> Dict[str, Any]:
        pass


class MerchantRepository(ABC):

    @abstractmethod
    def get(self, merchant_id) -> Optional[Merchant]:
        pass


class PriceHistoryRepository(ABC):

    @abstractmethod
    def record(self, currency: str, base_currency: str, price: Decimal, source: str, network: str = '') -> None:
        pass

    @abstractmethod
    def recent(self, currency: str, base_currency: str, since: datetime, limit: int = 100) -> List[PriceRecord]:
        pass


class DjangoSessionRepository(SessionRepository):

    def find_by_reference(self, reference: str) -> Optional[PaymentSession]:
        return (
            PaymentSession.objects.select_related('merchant')
            .filter(reference=reference)
            .first()
        )

    def create(self, build: SessionBuilder) -> PaymentSession:
        with transaction.atomic():
            counter, created = PaymentSequence.objects.select_for_update().get_or_create(pk=1)
            if created:
                highest = PaymentSession.objects.aggregate(
                    highest=Max('sequence'))['highest']
                counter.value = highest or 0

            sequence = counter.value + 1
            session = build(format_reference(sequence), sequence)
            session.save(force_insert=True)

            counter.value = sequence
            counter.save(update_fields=['value', 'updated_at'])

        logger.debug('payment session persisted: {}', session.reference)
        return session

    def update_status(self, reference: str, status: str, **fields: Any) -> PaymentSession:
        updated = PaymentSession.objects.filter(
            reference=reference,
            status=PaymentSession.Status.PENDING,
        ).update(status=status, updated_at=timezone.now(), **fields)

        session = self.find_by_reference(reference)
        if session is None:
            raise SessionNotFoundError(f'Payment not found: {reference}')
        if not updated:
            raise AlreadyFinalizedError(
                f'Payment {reference} already finalized with status {session.status}.')
        return session

    def attach_transaction(self, reference: str, **fields: Any) -> PaymentSession:
        PaymentSession.objects.filter(reference=reference).update(
            updated_at=timezone.now(), **fields)
        session = self.find_by_reference(reference)
        if session is None:
            raise SessionNotFoundError(f'Payment not found: {reference}')
        return session

    def list_recent(self, merchant_id: Optional[int] = None, limit: int = 50) -> List[PaymentSession]:
        queryset = PaymentSession.objects.select_related('merchant')
        if merchant_id is not None:
            queryset = queryset.filter(merchant_id=merchant_id)
        return list(queryset.order_by('-created_at', '-sequence')[:limit])

    def merchant_totals(self, merchant_id: int) -> Dict[str, Any]:
        paid = Q(status=PaymentSession.Status.PAID)
        totals = PaymentSession.objects.filter(merchant_id=merchant_id).aggregate(
            total_payments=Count('id'),
            completed_payments=Count('id', filter=paid),
            total_amount=Sum('amount'),
            completed_amount=Sum('amount', filter=paid),
            completed_crypto=Sum('quoted_crypto_amount', filter=paid),
        )
        for key in ('total_amount', 'completed_amount', 'completed_crypto'):
            totals[key] = totals[key] or Decimal('0')
        return totals


class DjangoMerchantRepository(MerchantRepository):

    def get(self, merchant_id) -> Optional[Merchant]:
        try:
            return Merchant.objects.filter(pk=merchant_id).first()
        except (TypeError, ValueError):
            return None


class DjangoPriceHistoryRepository(PriceHistoryRepository):

    def record(self, currency: str, base_currency: str, price: Decimal, source: str, network: str = '') -> None:
        PriceRecord.objects.create(
            currency=currency,
            base_currency=base_currency,
            price=price,
            source=source,
            network=network,
        )

    def recent(self, currency: str, base_currency: str, since: datetime, limit: int = 100) -> List[PriceRecord]:
        return list(
            PriceRecord.objects.filter(
                currency=currency,
                base_currency=base_currency,
                recorded_at__gte=since,
            ).order_by('-recorded_at')[:limit]
        )


class InMemorySessionRepository(SessionRepository):

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, PaymentSession] = {}
        self._sequence = 0

    def find_by_reference(self, reference: str) -> Optional[PaymentSession]:
        with self._lock:
            return self._sessions.get(reference)

    def create(self, build: SessionBuilder) -> PaymentSession:
        with self._lock:
            sequence = self._sequence + 1
            reference = format_reference(sequence)
            session = build(reference, sequence)
            session.updated_at = session.created_at
            self._sessions[reference] = session
            self._sequence = sequence
            return session

    def update_status(self, reference: str, status: str, **fields: Any) -> PaymentSession:
        with self._lock:
            session = self._sessions.get(reference)
            if session is None:
                raise SessionNotFoundError(f'Payment not found: {reference}')
            if session.status != PaymentSession.Status.PENDING:
                raise AlreadyFinalizedError(
                    f'Payment {reference} already finalized with status {session.status}.')
            session.status = status
            session.updated_at = timezone.now()
            for name, value in fields.items():
                setattr(session, name, value)
            return session

    def force_status(self, reference: str, status: str, **fields: Any) -> PaymentSession:
        """Overwrite a session unconditionally (fixtures and tests)."""
        with self._lock:
            session = self._sessions[reference]
            session.status = status
            for name, value in fields.items():
                setattr(session, name, value)
            return session

    def attach_transaction(self, reference: str, **fields: Any) -> PaymentSession:
        with self._lock:
            session = self._sessions.get(reference)
            if session is None:
                raise SessionNotFoundError(f'Payment not found: {reference}')
            session.updated_at = timezone.now()
            for name, value in fields.items():
                setattr(session, name, value)
            return session

    def list_recent(self, merchant_id: Optional[int] = None, limit: int = 50) -> List[PaymentSession]:
        with self._lock:
            sessions = [
                s for s in self._sessions.values()
                if merchant_id is None or s.merchant_id == merchant_id
            ]
        sessions.sort(key=lambda s: (s.created_at, s.sequence), reverse=True)
        return sessions[:limit]

    def merchant_totals(self, merchant_id: int) -> Dict[str, Any]:
        sessions = self.list_recent(merchant_id=merchant_id, limit=len(self._sessions))
        paid = [s for s in sessions if s.status == PaymentSession.Status.PAID]
        return {
            'total_payments': len(sessions),
            'completed_payments': len(paid),
            'total_amount': sum((s.amount for s in sessions), Decimal('0')),
            'completed_amount': sum((s.amount for s in paid), Decimal('0')),
            'completed_crypto': sum(
                (s.quoted_crypto_amount or Decimal('0') for s in paid), Decimal('0')),
        }


class InMemoryMerchantRepository(MerchantRepository):

    def __init__(self, merchants=()):
        self._merchants: Dict[Any, Merchant] = {}
        for merchant in merchants:
            self.add(merchant)

    def add(self, merchant: Merchant) -> Merchant:
        self._merchants[merchant.pk] = merchant
        return merchant

    def get(self, merchant_id) -> Optional[Merchant]:
        return self._merchants.get(merchant_id)


class InMemoryPriceHistoryRepository(PriceHistoryRepository):

    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[PriceRecord] = []

    def record(self, currency: str, base_currency: str, price: Decimal, source: str, network: str = '') -> None:
        with self._lock:
            self.records.append(PriceRecord(
                currency=currency,
                base_currency=base_currency,
                price=price,
                source=source,
                network=network,
                recorded_at=timezone.now(),
            ))

    def recent(self, currency: str, base_currency: str, since: datetime, limit: int = 100) -> List[PriceRecord]:
        with self._lock:
            matching = [
                r for r in self.records
                if r.currency == currency
                and r.base_currency == base_currency
                and r.recorded_at >= since
            ]
        matching.sort(key=lambda r: r.recorded_at, reverse=True)
        return matching[:limit]
