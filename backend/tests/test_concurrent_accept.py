import os
import random
import sys
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier
from uuid import uuid4

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from quoteflow.services.directory_store import DirectoryStore
from quoteflow.services.errors import ConflictRetryError, InvalidStateError
from quoteflow.services.quotation_store import QuotationStore


def _quoted_request(directory, store, provider_count):
    requester = directory.create_user(display_name="Req", email=f"req_{uuid4().hex[:8]}@example.com")
    providers = []
    for idx in range(provider_count):
        owner = directory.create_user(
            display_name=f"Owner {idx}",
            email=f"owner_{uuid4().hex[:8]}@example.com",
            role="provider",
        )
        providers.append(directory.create_provider(owner_user_id=owner.id, name=f"Provider {idx}"))
    request, quotations = store.create_request(
        requester_id=requester.id,
        details="Concurrent acceptance",
        provider_ids=[p.id for p in providers],
    )
    for quotation, provider in zip(quotations, providers):
        store.submit_quote(quotation.id, price=100 + len(provider.id), timeline="2 days", actor_user_id=provider.owner_user_id)
    return requester, request, quotations


def _race(store, requester_id, quotation_ids):
    barrier = Barrier(len(quotation_ids))

    def attempt(quotation_id):
        barrier.wait()
        try:
            store.accept_quotation(quotation_id, actor_user_id=requester_id)
            return "accepted"
        except (InvalidStateError, ConflictRetryError) as exc:
            return exc.kind

    with ThreadPoolExecutor(max_workers=len(quotation_ids)) as pool:
        return list(pool.map(attempt, quotation_ids))


def test_two_concurrent_accepts_on_siblings_yield_one_winner(tmp_path):
    directory = DirectoryStore(db_path=str(tmp_path / "quoteflow.sqlite3"))
    store = QuotationStore(db_path=directory.db_path, directory=directory)
    requester, request, quotations = _quoted_request(directory, store, provider_count=2)

    outcomes = _race(store, requester.id, [q.id for q in quotations])

    assert outcomes.count("accepted") == 1
    assert set(outcomes) - {"accepted"} <= {"invalid_state", "conflict_retry"}
    assert store.get_request_status(request.id) == "fulfilled"


@pytest.mark.parametrize("seed", range(8))
def test_randomized_concurrent_accepts_never_accept_twice(tmp_path, seed):
    rng = random.Random(seed)
    directory = DirectoryStore(db_path=str(tmp_path / "quoteflow.sqlite3"))
    store = QuotationStore(db_path=directory.db_path, directory=directory)
    requester, request, quotations = _quoted_request(directory, store, provider_count=rng.randint(2, 5))

    attempts = [q.id for q in quotations] + [rng.choice(quotations).id for _ in range(rng.randint(0, 4))]
    rng.shuffle(attempts)
    outcomes = _race(store, requester.id, attempts)

    assert outcomes.count("accepted") == 1
    final = [store.get_quotation(q.id).status for q in quotations]
    assert final.count("accepted") == 1
    assert final.count("rejected") == len(quotations) - 1
    assert store.get_request_status(request.id) == "fulfilled"
