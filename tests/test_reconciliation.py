"""Tests for the user-triggered reconciliation flows."""

import asyncio

import pytest

from ledgerlink.models.audit import AuditEventType
from ledgerlink.models.ledger import BudgetDirection, Transaction
from ledgerlink.reconciliation import ConfigurationError, NoteTooLongError
from ledgerlink.services.remote.interface import NotFoundError
from ledgerlink.services.ui import ConfirmationInterface, NotificationLevel
from ledgerlink.tags import codec

from tests.conftest import ALICE_LEDGER, BOB_LEDGER, CURRENT_MONTH, RECENT, SHARED_LEDGER, TODAY


MONTH = CURRENT_MONTH[:7]


async def _preload(sync):
    await sync.preload([ALICE_LEDGER, BOB_LEDGER, SHARED_LEDGER])


def _personal(client, amount=-4200, memo="Groceries", **extra):
    return client.add_transaction(
        ALICE_LEDGER,
        date=RECENT,
        amount=amount,
        memo=memo,
        account_id="alice-checking",
        category_id="alice-shared",
        payee_name="Market",
        **extra,
    )


def _shared(client, amount=-4200, memo="", account_id="shared-alice", **extra):
    return client.add_transaction(
        SHARED_LEDGER,
        date=RECENT,
        amount=amount,
        memo=memo,
        account_id=account_id,
        payee_name="Market",
        **extra,
    )


def _remote(client, ledger_id, txn_id):
    return client.ledgers[ledger_id].transactions[txn_id]


class BlockingConfirmation(ConfirmationInterface):
    """Holds every prompt open until released."""

    def __init__(self):
        self.waiting = asyncio.Event()
        self.release = asyncio.Event()

    async def confirm(self, title, message, danger=False):
        self.waiting.set()
        await self.release.wait()
        return True


class TestLinking:
    """Tests for link, unlink and suggestions."""

    @pytest.mark.asyncio
    async def test_link_tags_both_sides(self, engine, sync, fake_client, notifier, audit_storage):
        """Both notes receive the same new tag and the group is complete."""
        personal = _personal(fake_client)
        shared = _shared(fake_client, memo="Split")
        await _preload(sync)

        tag = await engine.link("Alice", personal.id, shared.id)

        assert _remote(fake_client, ALICE_LEDGER, personal.id).memo == f"Groceries #{tag}#"
        assert _remote(fake_client, SHARED_LEDGER, shared.id).memo == f"Split #{tag}#"
        assert engine.store.find_group(tag).complete
        assert notifier.at_level(NotificationLevel.SUCCESS) == [f"Linked with ID #{tag}#"]

        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.TRANSACTIONS_LINKED

    @pytest.mark.asyncio
    async def test_link_unknown_transaction(self, engine, sync, fake_client, notifier):
        """Unknown ids are reported and nothing is written."""
        personal = _personal(fake_client)
        await _preload(sync)

        assert await engine.link("Alice", personal.id, "missing") is None
        assert fake_client.calls_to("update_transaction") == []
        assert notifier.at_level(NotificationLevel.ERROR) == ["Transaction not found"]

    @pytest.mark.asyncio
    async def test_link_second_update_failure_keeps_first(self, engine, sync, fake_client, notifier, audit_storage):
        """A failed shared update propagates and leaves the personal tag in place."""
        personal = _personal(fake_client)
        await _preload(sync)
        ghost = Transaction(id="ghost", date=RECENT, amount=-4200, account_id="shared-alice")
        engine.store.upsert_transaction(SHARED_LEDGER, ghost)

        with pytest.raises(NotFoundError):
            await engine.link("Alice", personal.id, "ghost")

        assert codec.has_tag(_remote(fake_client, ALICE_LEDGER, personal.id).memo)
        assert notifier.at_level(NotificationLevel.ERROR)[-1].startswith("Failed to link")
        assert not engine.busy

        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.EXTERNAL_SERVICE_ERROR
        assert events[0].details == {"service": "ledger_api"}

    @pytest.mark.asyncio
    async def test_link_requires_unlinked_candidates(self, engine, sync, fake_client, notifier):
        """Tagged or out-of-category transactions cannot be linked."""
        private = fake_client.add_transaction(
            ALICE_LEDGER, date=RECENT, amount=-4200, account_id="alice-checking", category_id="groceries"
        )
        personal = _personal(fake_client)
        tagged = _shared(fake_client, memo="#A1B2C3#")
        shared = _shared(fake_client)
        await _preload(sync)

        assert await engine.link("Alice", private.id, shared.id) is None
        assert await engine.link("Alice", personal.id, tagged.id) is None

        assert fake_client.calls_to("update_transaction") == []
        assert notifier.at_level(NotificationLevel.ERROR) == ["Transaction not found"] * 2

    @pytest.mark.asyncio
    async def test_link_refused_before_cutoff(self, engine, sync, fake_client, notifier):
        """Transactions dated before the reconciliation cutoff are not linked."""
        personal = _personal(fake_client)
        shared = _shared(fake_client)
        await _preload(sync)
        engine.store.update_config(reconciliation_cutoff_date=TODAY)

        assert await engine.link("Alice", personal.id, shared.id) is None

        assert fake_client.calls_to("update_transaction") == []
        assert notifier.at_level(NotificationLevel.ERROR) == [
            f"Transactions before {TODAY.isoformat()} are not reconciled"
        ]

    @pytest.mark.asyncio
    async def test_link_note_too_long(self, engine, sync, fake_client, notifier, audit_storage):
        """A note that cannot hold the tag fails before any write."""
        personal = _personal(fake_client, memo="x" * 495)
        shared = _shared(fake_client)
        await _preload(sync)

        with pytest.raises(NoteTooLongError):
            await engine.link("Alice", personal.id, shared.id)

        assert fake_client.calls_to("update_transaction") == []
        assert notifier.at_level(NotificationLevel.ERROR)[-1] == (
            f"Failed to link: {NoteTooLongError.user_message}"
        )
        assert not engine.busy

        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.SYSTEM_ERROR
        assert events[0].details["action"] == "link"

    @pytest.mark.asyncio
    async def test_unlink(self, engine, sync, fake_client, confirmer):
        """Unlinking removes the tag from that one note."""
        personal = _personal(fake_client, memo="Groceries #A1B2C3#")
        shared = _shared(fake_client, memo="#A1B2C3#")
        await _preload(sync)

        assert await engine.unlink(ALICE_LEDGER, personal.id, "A1B2C3") is True

        assert _remote(fake_client, ALICE_LEDGER, personal.id).memo == "Groceries"
        assert _remote(fake_client, SHARED_LEDGER, shared.id).memo == "#A1B2C3#"
        assert confirmer.prompts[0][0] == "Remove Link"
        assert not engine.store.find_group("A1B2C3").complete

    @pytest.mark.asyncio
    async def test_unlink_declined(self, engine, sync, fake_client, confirmer, audit_storage):
        """A declined confirmation leaves the note untouched."""
        personal = _personal(fake_client, memo="Groceries #A1B2C3#")
        await _preload(sync)
        confirmer.answer = False

        assert await engine.unlink(ALICE_LEDGER, personal.id, "A1B2C3") is False

        assert _remote(fake_client, ALICE_LEDGER, personal.id).memo == "Groceries #A1B2C3#"
        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.USER_DECLINED

    @pytest.mark.asyncio
    async def test_suggest_matches(self, engine, sync, fake_client):
        """Suggestions come from the participant's unlinked shared transactions."""
        personal = _personal(fake_client, amount=-4200)
        close = _shared(fake_client, amount=-4250)
        exact = _shared(fake_client, amount=-4200)
        _shared(fake_client, amount=-4200, account_id="shared-bob")
        _shared(fake_client, amount=-9000)
        await _preload(sync)

        suggestions = engine.suggest_matches("Alice", personal.id)

        assert [t.id for t in suggestions] == [exact.id, close.id]

    @pytest.mark.asyncio
    async def test_unknown_participant(self, engine, sync):
        """Flows for an unconfigured participant raise ConfigurationError."""
        await _preload(sync)

        with pytest.raises(ConfigurationError):
            await engine.link("Carol", "a", "b")
        assert not engine.busy


class TestSharedTransactions:
    """Tests for copying, marking and deleting shared transactions."""

    @pytest.mark.asyncio
    async def test_mark_as_monthly(self, engine, sync, fake_client, notifier):
        """A shared inflow gets the deterministic monthly tag."""
        inflow = _shared(fake_client, amount=150000, memo="Transfer in")
        await _preload(sync)

        tag = await engine.mark_as_monthly("Alice", inflow.id, 1, 2026)

        assert tag == "M-01-26"
        assert _remote(fake_client, SHARED_LEDGER, inflow.id).memo == "Transfer in #M-01-26#"
        assert notifier.at_level(NotificationLevel.SUCCESS) == [
            "Marked as January 2026 contribution (#M-01-26#)"
        ]

    @pytest.mark.asyncio
    async def test_copy_to_shared(self, engine, sync, fake_client):
        """The shared copy lands in the contribution account and both are linked."""
        personal = _personal(fake_client, amount=-3300)
        await _preload(sync)

        tag = await engine.copy_to_shared("Alice", personal.id)

        (_, ledger_id, draft) = fake_client.calls_to("create_transaction")[0]
        assert ledger_id == SHARED_LEDGER
        assert draft.account_id == "shared-alice"
        assert draft.amount == -3300
        assert draft.memo == f"Groceries #{tag}#"
        assert _remote(fake_client, ALICE_LEDGER, personal.id).memo == f"Groceries #{tag}#"
        assert engine.store.find_group(tag).complete

    @pytest.mark.asyncio
    async def test_copy_declined(self, engine, sync, fake_client, confirmer):
        """Declining the copy creates nothing."""
        personal = _personal(fake_client)
        await _preload(sync)
        confirmer.answer = False

        assert await engine.copy_to_shared("Alice", personal.id) is None
        assert fake_client.calls_to("create_transaction") == []

    @pytest.mark.asyncio
    async def test_copy_requires_unlinked_personal(self, engine, sync, fake_client, notifier, confirmer):
        """An already linked personal expense is not copied again."""
        personal = _personal(fake_client, memo="Groceries #A1B2C3#")
        await _preload(sync)

        assert await engine.copy_to_shared("Alice", personal.id) is None

        assert confirmer.prompts == []
        assert fake_client.calls_to("create_transaction") == []
        assert notifier.at_level(NotificationLevel.ERROR) == ["Transaction not found"]

    @pytest.mark.asyncio
    async def test_mark_as_monthly_note_too_long(self, engine, sync, fake_client, notifier):
        """The monthly tag is not written onto an overlong note."""
        inflow = _shared(fake_client, amount=150000, memo="y" * 495)
        await _preload(sync)

        with pytest.raises(NoteTooLongError):
            await engine.mark_as_monthly("Alice", inflow.id, 1, 2026)

        assert fake_client.calls_to("update_transaction") == []
        assert notifier.at_level(NotificationLevel.ERROR)[-1].startswith("Failed to mark as monthly")

    @pytest.mark.asyncio
    async def test_edits_refused_before_cutoff(self, engine, sync, fake_client, notifier, confirmer):
        """Unlink, copy and delete leave pre-cutoff transactions alone."""
        personal = _personal(fake_client)
        linked = _personal(fake_client, memo="Groceries #A1B2C3#")
        shared = _shared(fake_client, memo="#A1B2C3#")
        await _preload(sync)
        engine.store.update_config(reconciliation_cutoff_date=TODAY)

        assert await engine.unlink(ALICE_LEDGER, linked.id, "A1B2C3") is None
        assert await engine.copy_to_shared("Alice", personal.id) is None
        assert await engine.delete_shared_transaction("Alice", shared.id) is None

        assert confirmer.prompts == []
        assert fake_client.calls_to("update_transaction") == []
        assert fake_client.calls_to("create_transaction") == []
        assert fake_client.calls_to("delete_transaction") == []
        assert len(notifier.at_level(NotificationLevel.ERROR)) == 3

    @pytest.mark.asyncio
    async def test_delete_regular_shared_transaction(self, engine, sync, fake_client, confirmer):
        """A regular shared transaction is deleted after a danger confirmation."""
        shared = _shared(fake_client, memo="#A1B2C3#")
        await _preload(sync)

        assert await engine.delete_shared_transaction("Alice", shared.id) is True

        assert fake_client.live_transactions(SHARED_LEDGER) == []
        assert engine.store.find_transaction(SHARED_LEDGER, shared.id) is None
        assert confirmer.prompts[0][2] is True

    @pytest.mark.asyncio
    async def test_delete_declined(self, engine, sync, fake_client, confirmer):
        """Declining keeps the transaction."""
        shared = _shared(fake_client)
        await _preload(sync)
        confirmer.answer = False

        assert await engine.delete_shared_transaction("Alice", shared.id) is False
        assert len(fake_client.live_transactions(SHARED_LEDGER)) == 1


class TestBusyFlag:
    """Tests for dropping concurrent triggers."""

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_dropped(self, engine, sync, fake_client):
        """A second flow started while one awaits confirmation returns None."""
        personal = _personal(fake_client, memo="Groceries #A1B2C3#")
        inflow = _shared(fake_client, amount=100000)
        await _preload(sync)
        blocking = BlockingConfirmation()
        engine._confirmer = blocking

        running = asyncio.create_task(engine.unlink(ALICE_LEDGER, personal.id, "A1B2C3"))
        await blocking.waiting.wait()

        assert engine.busy
        assert await engine.mark_as_monthly("Alice", inflow.id, 1, 2026) is None

        blocking.release.set()
        assert await running is True
        assert not engine.busy
        assert _remote(fake_client, SHARED_LEDGER, inflow.id).memo == ""


class TestBudgets:
    """Tests for budget moves and monthly contributions."""

    @pytest.mark.asyncio
    async def test_transfer_budget_to_balancing(self, engine, fake_client):
        """Moving to balancing lowers shared and raises balancing by the amount."""
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-shared", budgeted=50000)
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing", budgeted=0)

        assert await engine.transfer_budget("Alice", 10000, BudgetDirection.TO_BALANCING) is True

        assert fake_client.month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-shared").budgeted == 40000
        assert fake_client.month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing").budgeted == 10000

    @pytest.mark.asyncio
    async def test_transfer_budget_to_shared(self, engine, fake_client):
        """Moving to shared is the reverse move."""
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-shared", budgeted=0)
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing", budgeted=7000)

        await engine.transfer_budget("Alice", 7000, BudgetDirection.TO_SHARED, month=CURRENT_MONTH)

        assert fake_client.month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-shared").budgeted == 7000
        assert fake_client.month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing").budgeted == 0

    @pytest.mark.asyncio
    async def test_monthly_contribution_is_idempotent(self, engine, sync, fake_client):
        """Running twice creates one contribution; a new amount updates it."""
        await _preload(sync)

        created = await engine.ensure_monthly_contribution("Alice", MONTH, 100000)
        again = await engine.ensure_monthly_contribution("Alice", MONTH, 100000)

        assert again.id == created.id
        assert len(fake_client.calls_to("create_transaction")) == 1
        first_of_month = TODAY.replace(day=1)
        assert created.date == first_of_month
        assert created.memo == codec.format_tag(codec.generate_monthly(first_of_month.month, first_of_month.year))
        assert created.payee_name == f"Monthly Contribution - {first_of_month.strftime('%B %Y')}"
        assert created.category_id == "rta"
        assert created.account_id == "shared-alice"

        updated = await engine.ensure_monthly_contribution("Alice", MONTH, 120000)

        assert updated.id == created.id
        assert _remote(fake_client, SHARED_LEDGER, created.id).amount == 120000
        assert len(fake_client.calls_to("create_transaction")) == 1
        assert len(fake_client.calls_to("list_categories")) == 1

    @pytest.mark.asyncio
    async def test_apply_monthly_allocations(self, engine, sync, fake_client, household):
        """Shared budget absorbs balancing activity and a contribution is created."""
        engine.store.update_config(monthly_allocations={MONTH: {"Alice": 100000}})
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-shared")
        fake_client.set_month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing", activity=-20000)
        await _preload(sync)

        result = await engine.apply_monthly_allocations(MONTH)

        assert list(result) == ["Alice"]
        assert result["Alice"].amount == 100000
        assert fake_client.month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-shared").budgeted == 80000
        assert fake_client.month_category(ALICE_LEDGER, CURRENT_MONTH, "alice-balancing").budgeted == 20000
        assert not any(c[1] == BOB_LEDGER for c in fake_client.calls_to("update_category_budget"))

    @pytest.mark.asyncio
    async def test_apply_allocations_without_month_data(self, engine, sync, fake_client):
        """A month the remote does not know counts as zero activity."""
        engine.store.update_config(monthly_allocations={MONTH: {"Bob": 50000}})
        await _preload(sync)

        await engine.apply_monthly_allocations(MONTH)

        assert fake_client.month_category(BOB_LEDGER, CURRENT_MONTH, "bob-shared").budgeted == 50000
        assert fake_client.month_category(BOB_LEDGER, CURRENT_MONTH, "bob-balancing").budgeted == 0

    @pytest.mark.asyncio
    async def test_apply_without_allocations(self, engine, notifier):
        """Nothing happens until allocations are set."""
        assert await engine.apply_monthly_allocations("2026-01") is None
        assert notifier.at_level(NotificationLevel.ERROR) == ["Please set allocation amounts first"]
