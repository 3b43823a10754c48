from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.app.models import MessageDirection, utc_now
from backend.app.store import InMemoryStore


def test_concurrent_contact_creation_yields_one_contact() -> None:
    store = InMemoryStore()

    def create(_: int) -> str:
        contact, _ = store.find_or_create_contact(user_id="dev-local", phone="+55 11 98888-7777")
        return contact.id

    with ThreadPoolExecutor(max_workers=10) as executor:
        ids = set(executor.map(create, range(200)))

    assert len(ids) == 1
    assert len(store.list_contacts("dev-local")) == 1


def test_message_write_and_read_concurrent() -> None:
    store = InMemoryStore()
    contact, _ = store.find_or_create_contact(user_id="dev-local", phone="5511988887777")
    read_errors: list[Exception] = []

    def writer(index: int) -> None:
        store.record_message(
            user_id="dev-local",
            contact_id=contact.id,
            direction=MessageDirection.inbound,
            content=f"mensagem {index}",
            remote_message_id=f"3EB0{index % 150:08d}",
        )

    def reader() -> None:
        for _ in range(300):
            try:
                store.list_messages(contact.id)
            except Exception as exc:  # pragma: no cover - regression trap
                read_errors.append(exc)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(writer, i) for i in range(300)]
        futures.extend(executor.submit(reader) for _ in range(4))
        for future in futures:
            future.result()

    assert not read_errors
    assert len(store.list_messages(contact.id)) == 150


def test_only_one_worker_acquires_session_lock(store, seed) -> None:
    flow = seed.flow([{"id": "t", "type": "text", "data": {"message": "Oi"}}])
    contact = seed.contact()
    session = store.create_session(flow=flow, contact=contact, instance_id=None, variables={})
    now = utc_now()

    def acquire(_: int) -> bool:
        _, acquired = store.try_lock_session(session.id, now=now, lock_timeout_seconds=60)
        return acquired

    with ThreadPoolExecutor(max_workers=10) as executor:
        results = list(executor.map(acquire, range(50)))

    assert results.count(True) == 1
    assert store.get_session(session.id).processing is True
