"""
Blob Store Tests
"""

import hashlib
import json

import pytest

from stepcrawl.crawler.models import PageContent
from stepcrawl.storage.blob_store import BlobStoreError, create_blob_store, page_key, serialize_page
from stepcrawl.utils.config import StorageConfig


def test_page_key_format():
    assert page_key("docs", "https://ex.com/a/b?x=1") == "docs/https%3A%2F%2Fex.com%2Fa%2Fb%3Fx%3D1.html"
    assert page_key("/docs/", "https://ex.com/") == "docs/https%3A%2F%2Fex.com%2F.html"


def test_serialized_page_holds_metadata_and_content():
    content = PageContent(url="https://ex.com/", metadata={'title': 'Home', 'last-modified': '', 'url': 'https://ex.com/'},
                          content="# Home")
    assert json.loads(serialize_page(content)) == {
        'metadata': {'title': 'Home', 'last-modified': '', 'url': 'https://ex.com/'},
        'content': "# Home",
    }


async def test_put_get_and_overwrite(blob_store):
    key = page_key("docs", "https://ex.com/a")
    await blob_store.put(key, b"first")
    await blob_store.put(key, b"second")

    assert await blob_store.exists(key)
    assert await blob_store.get(key) == b"second"
    key_hash = hashlib.sha256(key.encode('utf-8')).hexdigest()
    assert (blob_store.data_directory / "docs" / key_hash[:2] / f"{key_hash}.html").read_bytes() == b"second"
    assert (await blob_store.get_stats())['total_stored'] == 2


async def test_long_url_gets_short_file_name(blob_store):
    url = "https://ex.com/" + "section/" * 60
    key = page_key("docs", url)
    assert len(key) > 255

    await blob_store.put(key, b"deep")

    assert await blob_store.get(key) == b"deep"
    stored = [path for path in blob_store.data_directory.rglob("*") if path.is_file()]
    assert len(stored) == 1
    assert stored[0].relative_to(blob_store.data_directory).parts[0] == "docs"
    assert len(stored[0].name) == 64 + len(".html")


async def test_distinct_keys_do_not_collide(blob_store):
    await blob_store.put(page_key("docs", "https://ex.com/a"), b"a")
    await blob_store.put(page_key("docs", "https://ex.com/b"), b"b")

    assert await blob_store.get(page_key("docs", "https://ex.com/a")) == b"a"
    assert await blob_store.get(page_key("docs", "https://ex.com/b")) == b"b"


async def test_missing_key(blob_store):
    assert await blob_store.get("docs/none.html") is None
    assert not await blob_store.exists("docs/none.html")


@pytest.mark.parametrize("key", ["../escape.html", "/abs.html", "docs//x.html", "", "docs/./x.html", "x" * 201 + "/page.html"])
async def test_rejects_unsafe_keys(blob_store, key):
    with pytest.raises(BlobStoreError):
        await blob_store.put(key, b"data")


async def test_create_from_config(tmp_path):
    store = create_blob_store(StorageConfig(data_directory=str(tmp_path / "pages")))
    await store.initialize()

    assert (tmp_path / "pages").is_dir()
    await store.close()
