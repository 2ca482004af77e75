import pytest

from catalog_sync.logging_filters import redact_tokens
from catalog_sync.models.schemas import RemoteRecord, StagedProduct
from catalog_sync.remote.lookup import LookupStrategy
from catalog_sync.sync.components.diff import detect_changes, product_payload
from catalog_sync.sync.components.util import (
    details_to_html,
    extract_list_items,
    infer_image_extension,
    normalize_image_ref_for_compare,
    normalize_text_for_compare,
)


def _staged(**kw):
    base = {"id": 1, "batch_id": 1, "sku": "A1", "name": "Kalem", "price": 10.0, "stock_amount": 3.0}
    base.update(kw)
    return StagedProduct(**base)


def test_text_compare_ignores_markup_case_and_spacing():
    assert normalize_text_for_compare("<p>Mavi  Kalem</p>\n<p>0.7 mm</p>") == normalize_text_for_compare("mavi kalem 0.7 MM")
    assert normalize_text_for_compare("A &amp; B") == "a & b"
    assert normalize_text_for_compare(None) == ""


def test_image_compare_uses_file_name_only():
    a = normalize_image_ref_for_compare("https://cdn1.test/x/Photo.JPG?w=300")
    b = normalize_image_ref_for_compare("//cdn2.test/y/photo.jpg#frag")
    assert a == b == "photo.jpg"


@pytest.mark.parametrize("value,expected", [
    ("", ""),
    ("tek satır", "<p>tek satır</p>"),
    ("a\r\n\r\nb & c", "<p>a</p><p>b &amp; c</p>"),
    ("<ul><li>x</li></ul>", "<ul><li>x</li></ul>"),
])
def test_details_to_html(value, expected):
    assert details_to_html(value) == expected


@pytest.mark.parametrize("content_type,url,expected", [
    ("image/png", "https://x/a.jpg", "png"),
    ("image/jpeg", None, "jpg"),
    (None, "https://x/a.WEBP?v=1", "webp"),
    ("application/octet-stream", "https://x/a.jpeg", "jpg"),
    (None, "https://x/noext", "jpg"),
])
def test_infer_image_extension(content_type, url, expected):
    assert infer_image_extension(content_type, url) == expected


def test_extract_list_items_accepts_wrappers():
    assert extract_list_items([{"id": 1}, "x"]) == [{"id": 1}]
    assert extract_list_items({"data": [{"id": 2}]}) == [{"id": 2}]
    assert extract_list_items({"items": [{"id": 3}]}) == [{"id": 3}]
    assert extract_list_items({"id": 4}) == []
    assert extract_list_items(None) == []


def test_product_payload():
    payload = product_payload(_staged(sku=" A1 ", status=1), currency_id=2)
    assert payload == {
        "name": "Kalem",
        "fullName": "Kalem",
        "sku": "A1",
        "price1": 10.0,
        "stockAmount": 3.0,
        "currency": {"id": 2},
        "status": 1,
    }


def test_detect_changes_without_snapshot_is_full():
    ch = detect_changes(_staged(description="x", selected_category_id=4), None, 1)
    assert ch.fields["sku"] == "A1"
    assert ch.description and ch.category and ch.replace_category
    assert not ch.image


def test_detect_changes_against_snapshot():
    remote = RemoteRecord.model_validate({
        "id": 9, "sku": "A1", "name": "Kalem", "price1": 10, "stockAmount": 3, "status": 0,
        "detail": {"id": 1, "details": "<p>Mavi</p>"},
        "images": [{"id": 5, "filename": "product-9.jpg", "originalUrl": "https://cdn/product-9.jpg"}],
    })
    same = detect_changes(_staged(description="mavi", image_url="https://src/a.jpg", remote_image_id=5), remote, 1)
    assert not same.any

    changed = detect_changes(_staged(name="Kurşun Kalem", stock_amount=0, image_url="https://src/a.jpg"), remote, 1)
    assert changed.fields == {"name": "Kurşun Kalem", "fullName": "Kurşun Kalem", "stockAmount": 0.0}
    assert changed.image is True
    assert changed.category is False


def test_lookup_strategy_prefers_remembered_spellings():
    s = LookupStrategy(page_size=10, max_pages=2)
    s.remember_filter("query")
    s.remember_pages(("pageNumber", "pageSize"))
    assert s.filter_order()[0] == "query"
    assert s.page_order()[0] == ("pageNumber", "pageSize")
    assert list(s.pages(("page", "limit"))) == [{"page": 1, "limit": 10}, {"page": 2, "limit": 10}]

    sub = s.with_filters(("productId",), max_pages=5)
    assert sub.filter_order() == ["productId"]
    assert sub.page_order()[0] == ("pageNumber", "pageSize")
    assert sub.max_pages == 5


def test_tokens_are_redacted():
    assert redact_tokens("Authorization: Bearer abcdefghijk123") == "Authorization: Bearer <redacted>"
    assert redact_tokens('{"access_token": "sekret-value"}') == '{"access_token": "<redacted>"}'
