import asyncio

import pytest

from catalog_sync.store.stage_store import (
    BatchNotFound,
    BlankSkuError,
    DuplicateSkuError,
    ProductNotFound,
    StoreError,
)

from remote_fakes import open_store, staged


def _run(tmp_path, scenario):
    async def main():
        store = await open_store(tmp_path)
        try:
            return await scenario(store)
        finally:
            await store.db.dispose()
    return asyncio.run(main())


def test_create_batch_stores_rows_pending(tmp_path):
    async def scenario(store):
        batch, products = await staged(store, [
            {"sku": " K1 ", "name": "Klasör", "price1": "19.90", "stockAmount": 4},
            {"sku": "K2", "name": "Dosya"},
        ], name="Kırtasiye")
        return batch, products

    batch, products = _run(tmp_path, scenario)
    assert batch.name == "Kırtasiye"
    assert batch.total_products == 2
    assert batch.status == "PROCESSING"
    assert [p.sku for p in products] == ["K1", "K2"]
    assert products[0].price == 19.9
    assert products[0].stock_amount == 4
    assert all(p.transfer_status == "PENDING" and p.remote_id is None for p in products)


def test_create_batch_rejects_repeated_skus(tmp_path):
    async def scenario(store):
        with pytest.raises(DuplicateSkuError) as ei:
            await store.create_batch("x", [{"sku": "A"}, {"sku": "B"}, {"sku": "A"}, {"sku": "B "}, {"sku": "C"}])
        assert await store.list_batches() == []
        return ei.value

    err = _run(tmp_path, scenario)
    assert err.skus == ["A", "B"]
    assert "Aynı SKU'dan ürünler var: A, B" in str(err)


def test_create_batch_rejects_empty_input(tmp_path):
    async def scenario(store):
        with pytest.raises(StoreError):
            await store.create_batch("x", [])
        with pytest.raises(StoreError):
            await store.create_batch("  ", [{"sku": "A"}])

    _run(tmp_path, scenario)


def test_missing_batch_and_product(tmp_path):
    async def scenario(store):
        with pytest.raises(BatchNotFound):
            await store.get_batch(999)
        with pytest.raises(BatchNotFound):
            await store.recompute_batch_summary(999)
        with pytest.raises(ProductNotFound):
            await store.get_staged_product(999)

    _run(tmp_path, scenario)


def test_success_status_clears_error_and_stamps_date(tmp_path):
    async def scenario(store):
        _, (p,) = await staged(store, [{"sku": "S1"}])
        await store.update_transfer_status("S1", None, "FAILED", "Bilinmeyen hata", batch_id=p.batch_id)
        failed = await store.get_staged_product(p.id)
        # an error passed along with SUCCESS is dropped
        touched = await store.update_transfer_status("S1", 42, "success", "ignored", batch_id=p.batch_id)
        return failed, touched, await store.get_staged_product(p.id)

    failed, touched, row = _run(tmp_path, scenario)
    assert failed.transfer_error == "Bilinmeyen hata"
    assert failed.last_transfer_date is None
    assert touched == 1
    assert row.transfer_status == "SUCCESS"
    assert row.transfer_error is None
    assert row.remote_id == 42
    assert row.last_transfer_date is not None


def test_transfer_status_can_be_narrowed_to_one_batch(tmp_path):
    async def scenario(store):
        b1, (p1,) = await staged(store, [{"sku": "SAME"}], name="one")
        b2, (p2,) = await staged(store, [{"sku": "SAME"}], name="two")
        await store.update_transfer_status("SAME", 7, "SUCCESS", batch_id=b2.id)
        return await store.get_staged_product(p1.id), await store.get_staged_product(p2.id)

    first, second = _run(tmp_path, scenario)
    assert first.transfer_status == "PENDING"
    assert second.transfer_status == "SUCCESS"


def test_unknown_status_rejected(tmp_path):
    async def scenario(store):
        with pytest.raises(StoreError):
            await store.update_transfer_status("S1", None, "DONE")

    _run(tmp_path, scenario)


def test_patch_is_limited_to_plain_fields(tmp_path):
    async def scenario(store):
        _, (p,) = await staged(store, [{"sku": "P1", "name": "Eski"}])
        updated = await store.update_staged_product(p.id, name="Yeni", price=5.5, selected_category_id=3)
        with pytest.raises(StoreError):
            await store.update_staged_product(p.id, transfer_status="SUCCESS")
        return updated

    updated = _run(tmp_path, scenario)
    assert updated.name == "Yeni"
    assert updated.price == 5.5
    assert updated.selected_category_id == 3


def test_recompute_counts_and_is_idempotent(tmp_path):
    async def scenario(store):
        batch, ps = await staged(store, [{"sku": f"R{i}"} for i in range(4)])
        await store.update_transfer_status("R0", 1, "SUCCESS", batch_id=batch.id)
        await store.update_transfer_status("R1", 2, "SUCCESS", batch_id=batch.id)
        await store.update_transfer_status("R2", None, "FAILED", "Ağ hatası", batch_id=batch.id)
        first = await store.recompute_batch_summary(batch.id)
        second = await store.recompute_batch_summary(batch.id)
        await store.update_transfer_status("R3", 4, "SUCCESS", batch_id=batch.id)
        third = await store.recompute_batch_summary(batch.id)
        return first, second, third, await store.get_batch(batch.id)

    first, second, third, batch = _run(tmp_path, scenario)
    assert (first.success, first.failed, first.status) == (2, 1, "PROCESSING")
    assert (second.success, second.failed, second.status) == (first.success, first.failed, first.status)
    assert (third.total, third.success, third.failed, third.status) == (4, 3, 1, "COMPLETED")
    assert batch.successful_products == 3
    assert batch.failed_products == 1
    assert batch.status == "COMPLETED"


def test_list_filters_by_status_and_ids(tmp_path):
    async def scenario(store):
        batch, ps = await staged(store, [{"sku": "L1"}, {"sku": "L2"}, {"sku": "L3"}])
        await store.update_transfer_status("L2", None, "FAILED", "x", batch_id=batch.id)
        failed = await store.list_staged_products(batch.id, status="failed")
        subset = await store.list_staged_products(batch.id, ids=[ps[0].id, ps[2].id])
        return failed, subset

    failed, subset = _run(tmp_path, scenario)
    assert [p.sku for p in failed] == ["L2"]
    assert [p.sku for p in subset] == ["L1", "L3"]


def test_update_batch_summary_writes_counters(tmp_path):
    async def scenario(store):
        batch, _ = await staged(store, [{"sku": "U1"}, {"sku": "U2"}])
        await store.update_batch_summary(batch.id, 2, 1, 1, "COMPLETED")
        with pytest.raises(BatchNotFound):
            await store.update_batch_summary(999, 0, 0, 0, "COMPLETED")
        return await store.get_batch(batch.id)

    batch = _run(tmp_path, scenario)
    assert (batch.successful_products, batch.failed_products, batch.status) == (1, 1, "COMPLETED")


def test_create_batch_rejects_blank_skus(tmp_path):
    async def scenario(store):
        with pytest.raises(BlankSkuError) as two:
            await store.create_batch("x", [{"sku": ""}, {"sku": "A"}, {"sku": "  "}])
        with pytest.raises(BlankSkuError) as one:
            await store.create_batch("x", [{"sku": " "}])
        assert await store.list_batches() == []
        return two.value, one.value

    two, one = _run(tmp_path, scenario)
    assert two.rows == [1, 3]
    assert "SKU'su boş ürünler var (satır: 1, 3)" in str(two)
    assert one.rows == [1]
    assert isinstance(one, StoreError)
