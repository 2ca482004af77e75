import asyncio

from catalog_sync.remote.errors import DUPLICATE_MESSAGE, ErrorKind
from catalog_sync.sync.reconciler import ItemReconciler, RunContext

from remote_fakes import (
    FakeRemote,
    duplicate_error,
    http_error,
    mark_pushed,
    open_store,
    quota_error,
    staged,
    transport_error,
)


def _run(tmp_path, scenario):
    async def main():
        store = await open_store(tmp_path)
        try:
            return await scenario(store)
        finally:
            await store.db.dispose()
    return asyncio.run(main())


def test_plain_create(tmp_path):
    async def scenario(store):
        remote = FakeRemote(next_id=100)
        _, (p,) = await staged(store, [{"sku": "A1", "name": "Kalem", "price": 12.5,
                                         "description": "Mavi", "image_url": "https://cdn.x/a1.jpg"}])
        out = await ItemReconciler(remote, store).reconcile(p)
        return out, await store.get_staged_product(p.id), remote

    out, row, remote = _run(tmp_path, scenario)
    assert out.success is True
    assert out.remote_id == 100
    assert out.as_result() == {"success": True, "remote_id": 100}
    assert row.remote_id == 100
    assert row.transfer_status == "SUCCESS"
    assert row.transfer_error is None
    assert row.last_transfer_date is not None
    # detail and image follow the core create, ids remembered for later PUTs
    assert remote.details[100] == "Mavi"
    assert remote.images[100] == "https://cdn.x/a1.jpg"
    assert row.remote_detail_id == 9100
    assert row.remote_image_id == 7100


def test_deleted_then_updated_recreates(tmp_path):
    async def scenario(store):
        remote = FakeRemote(next_id=201)
        _, (p,) = await staged(store, [{"sku": "A2", "name": "Silgi"}])
        p = await mark_pushed(store, p, 200)
        out = await ItemReconciler(remote, store).reconcile(p)
        return out, await store.get_staged_product(p.id)

    out, row = _run(tmp_path, scenario)
    assert out.success is True
    assert out.recreated is True
    assert out.remote_id == 201
    assert row.sku == "A2"
    assert row.remote_id == 201
    assert row.transfer_status == "SUCCESS"


def test_failed_recreate_drops_stale_remote_id(tmp_path):
    async def scenario(store):
        remote = FakeRemote(next_id=201)
        remote.fail("create", "A2", transport_error())
        _, (p,) = await staged(store, [{"sku": "A2", "name": "Silgi"}])
        p = await mark_pushed(store, p, 200)
        out = await ItemReconciler(remote, store).reconcile(p)
        return out, await store.get_staged_product(p.id)

    out, row = _run(tmp_path, scenario)
    assert out.success is False
    assert out.error_kind == ErrorKind.TRANSIENT
    assert row.remote_id is None
    assert row.transfer_status == "FAILED"
    assert row.transfer_error


def test_duplicate_without_match(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        remote.fail("create", "A3", duplicate_error())
        _, (p,) = await staged(store, [{"sku": "A3", "name": "Cetvel"}])
        out = await ItemReconciler(remote, store).reconcile(p)
        return out, await store.get_staged_product(p.id)

    out, row = _run(tmp_path, scenario)
    assert out.as_result() == {
        "success": False,
        "error_kind": "validation",
        "error_message": DUPLICATE_MESSAGE,
    }
    assert row.transfer_status == "FAILED"
    assert row.transfer_error == "Aynı üründen var"
    assert row.remote_id is None


def test_duplicate_adopts_existing_identity(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        remote.seed(555, "X", name="Eski ad", price1=1)
        _, (p,) = await staged(store, [{"sku": "X", "name": "Yeni ad", "price": 9}])
        out = await ItemReconciler(remote, store).reconcile(p)
        return out, await store.get_staged_product(p.id), remote

    out, row, remote = _run(tmp_path, scenario)
    assert out.success is True
    assert out.duplicate is True
    assert out.remote_id == 555
    assert row.remote_id == 555
    assert row.transfer_status == "SUCCESS"
    # adopted record receives the staged values
    assert remote.products[555]["name"] == "Yeni ad"
    assert remote.products[555]["price1"] == 9.0


def test_success_clears_previous_error(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        _, (p,) = await staged(store, [{"sku": "B1", "name": "Defter"}])
        await store.update_transfer_status("B1", None, "FAILED", "Ağ hatası", batch_id=p.batch_id)
        p = await store.get_staged_product(p.id)
        assert p.transfer_error
        await ItemReconciler(remote, store).reconcile(p)
        return await store.get_staged_product(p.id)

    row = _run(tmp_path, scenario)
    assert row.transfer_status == "SUCCESS"
    assert row.transfer_error is None


def test_update_failure_keeps_remote_id(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        remote.seed(300, "C1")
        remote.fail("update", 300, http_error(400, "price1 must be positive"))
        _, (p,) = await staged(store, [{"sku": "C1", "name": "Boya"}])
        p = await mark_pushed(store, p, 300)
        out = await ItemReconciler(remote, store).reconcile(p)
        return out, await store.get_staged_product(p.id)

    out, row = _run(tmp_path, scenario)
    assert out.success is False
    assert out.error_kind == ErrorKind.VALIDATION
    assert out.error_message == "price1 must be positive"
    assert row.remote_id == 300
    assert row.transfer_status == "FAILED"


def test_update_duplicate_is_resolved_by_adoption(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        remote.seed(300, "C2")
        remote.seed(301, "C2-other")
        remote.fail("update", 300, duplicate_error())
        _, (p,) = await staged(store, [{"sku": "C2", "name": "Fırça"}])
        p = await mark_pushed(store, p, 300)
        return await ItemReconciler(remote, store).reconcile(p)

    out = _run(tmp_path, scenario)
    assert out.success is True
    assert out.duplicate is True
    assert out.remote_id == 300


def test_sub_resource_failure_is_swallowed(tmp_path):
    async def scenario(store):
        remote = FakeRemote(next_id=400)
        remote.fail("detail", 400, http_error(500))
        _, (p,) = await staged(store, [{"sku": "D1", "name": "Makas", "description": "Keskin",
                                         "image_url": "https://cdn.x/d1.png"}])
        out = await ItemReconciler(remote, store).reconcile(p)
        return out, await store.get_staged_product(p.id), remote

    out, row, remote = _run(tmp_path, scenario)
    assert out.success is True
    assert out.remote_id == 400
    assert len(out.warnings) == 1 and out.warnings[0].startswith("detail:")
    assert row.transfer_status == "SUCCESS"
    # image still attempted after the detail failure
    assert remote.images[400] == "https://cdn.x/d1.png"


def test_unchanged_pushed_record_is_skipped(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        _, (p,) = await staged(store, [{"sku": "E1", "name": "Tebeşir", "price": 3, "stock": 10}])
        snapshot = remote.seed(600, "E1", name="Tebeşir", price1=3, stockAmount=10, status=0)
        p = await mark_pushed(store, p, 600)
        out = await ItemReconciler(remote, store).reconcile(p, snapshot)
        return out, remote

    out, remote = _run(tmp_path, scenario)
    assert out.success is True
    assert out.skipped is True
    assert remote.count("update") == 0


def test_failed_record_is_never_skipped(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        _, (p,) = await staged(store, [{"sku": "E2", "name": "Tebeşir", "price": 3}])
        snapshot = remote.seed(601, "E2", name="Tebeşir", price1=3, stockAmount=0, status=0)
        await store.update_transfer_status("E2", 601, "FAILED", "Sunucu hatası", batch_id=p.batch_id)
        p = await store.get_staged_product(p.id)
        out = await ItemReconciler(remote, store).reconcile(p, snapshot)
        return out, await store.get_staged_product(p.id)

    out, row = _run(tmp_path, scenario)
    assert out.success is True
    assert out.skipped is False
    assert row.transfer_status == "SUCCESS"
    assert row.transfer_error is None


def test_update_sends_only_changed_fields(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        _, (p,) = await staged(store, [{"sku": "E3", "name": "Zımba", "price": 45}])
        snapshot = remote.seed(602, "E3", name="Zımba", price1=40, stockAmount=0, status=0)
        p = await mark_pushed(store, p, 602)
        await ItemReconciler(remote, store).reconcile(p, snapshot)
        return remote

    remote = _run(tmp_path, scenario)
    (update_call,) = [c for c in remote.calls if c[0] == "update"]
    assert update_call[2] == {"price1": 45.0}


def test_category_replaced_when_remote_differs(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        _, (p,) = await staged(store, [{"sku": "F1", "name": "Kutu", "categoryId": 12}])
        snapshot = remote.seed(700, "F1", name="Kutu", price1=0, stockAmount=0, status=0,
                               categories=[{"id": 5, "name": "Eski"}])
        p = await mark_pushed(store, p, 700)
        await ItemReconciler(remote, store).reconcile(p, snapshot)
        return remote

    remote = _run(tmp_path, scenario)
    assert ("category", 700, 12, True) in remote.calls


def test_category_added_on_create(tmp_path):
    async def scenario(store):
        remote = FakeRemote(next_id=710)
        _, (p,) = await staged(store, [{"sku": "F2", "name": "Kutu", "categoryId": 12}])
        await ItemReconciler(remote, store).reconcile(p)
        return remote

    remote = _run(tmp_path, scenario)
    assert ("category", 710, 12, False) in remote.calls


def test_quota_halts_further_creates_in_run(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        remote.fail("create", "G1", quota_error())
        _, (p1, p2) = await staged(store, [{"sku": "G1"}, {"sku": "G2"}])
        rec = ItemReconciler(remote, store)
        ctx = RunContext()
        o1 = await rec.reconcile(p1, ctx=ctx)
        o2 = await rec.reconcile(p2, ctx=ctx)
        return o1, o2, ctx, remote

    o1, o2, ctx, remote = _run(tmp_path, scenario)
    assert o1.error_kind == ErrorKind.QUOTA_EXCEEDED
    assert o2.error_kind == ErrorKind.QUOTA_EXCEEDED
    assert remote.count("create") == 1
    assert ctx.halted_ops == ["create"]


def test_quota_during_duplicate_lookup_halts_lookups(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        remote.fail("create", "H1", duplicate_error())
        remote.fail("create", "H2", duplicate_error())
        remote.fail("find_by_key", "H1", quota_error())
        _, (p1, p2) = await staged(store, [{"sku": "H1"}, {"sku": "H2"}])
        rec = ItemReconciler(remote, store)
        ctx = RunContext()
        o1 = await rec.reconcile(p1, ctx=ctx)
        o2 = await rec.reconcile(p2, ctx=ctx)
        return o1, o2, ctx, remote, await store.get_staged_product(p1.id)

    o1, o2, ctx, remote, row = _run(tmp_path, scenario)
    assert o1.error_kind == ErrorKind.QUOTA_EXCEEDED
    assert o1.error_message != DUPLICATE_MESSAGE
    assert o2.error_kind == ErrorKind.QUOTA_EXCEEDED
    assert remote.count("find_by_key") == 1
    assert ctx.halted_ops == ["find_by_key"]
    assert row.transfer_status == "FAILED"
    assert row.remote_id is None


def test_transient_lookup_failure_is_not_reported_as_duplicate(tmp_path):
    async def scenario(store):
        remote = FakeRemote()
        remote.fail("create", "H3", duplicate_error())
        remote.fail("find_by_key", "H3", transport_error())
        _, (p,) = await staged(store, [{"sku": "H3"}])
        return await ItemReconciler(remote, store).reconcile(p)

    out = _run(tmp_path, scenario)
    assert out.success is False
    assert out.error_kind == ErrorKind.TRANSIENT
