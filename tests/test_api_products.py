"""
Tests for leadrelay/api/products.py - cached catalog reads and write-through invalidation.
"""
import pytest

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


async def _create(client, name="Furnace tune-up", headers=ALICE, **fields):
    response = await client.post("/api/v1/products", json={"name": name, **fields}, headers=headers)
    assert response.status_code == 201
    return response.json()


class TestListProducts:
    @pytest.mark.asyncio
    async def test_second_read_is_cached(self, client):
        await _create(client)

        first = await client.get("/api/v1/products", headers=ALICE)
        second = await client.get("/api/v1/products", headers=ALICE)

        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT"
        assert second.json() == first.json()
        assert first.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_filtered_reads_cached_in_redis(self, client, container):
        await _create(client, category="hvac")
        await _create(client, name="Drain cleaning", category="plumbing")

        first = await client.get("/api/v1/products", params={"category": "hvac"}, headers=ALICE)
        second = await client.get("/api/v1/products", params={"category": "hvac"}, headers=ALICE)

        assert [p["name"] for p in first.json()["products"]] == ["Furnace tune-up"]
        assert second.headers["X-Cache"] == "HIT"
        assert container.catalog_cache.stats()["size"] == 0

    @pytest.mark.asyncio
    async def test_users_isolated(self, client):
        await _create(client, headers=ALICE)
        await client.get("/api/v1/products", headers=ALICE)

        response = await client.get("/api/v1/products", headers=BOB)
        assert response.headers["X-Cache"] == "MISS"
        assert response.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_conditional_get(self, client):
        first = await client.get("/api/v1/products", headers=ALICE)
        second = await client.get(
            "/api/v1/products",
            headers={**ALICE, "If-None-Match": first.headers["ETag"]},
        )
        assert second.status_code == 304


class TestWritesInvalidate:
    @pytest.mark.asyncio
    async def test_create_invalidates_listing(self, client):
        await client.get("/api/v1/products", headers=ALICE)
        await _create(client)

        response = await client.get("/api/v1/products", headers=ALICE)
        assert response.headers["X-Cache"] == "MISS"
        assert response.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_update_invalidates_detail_and_listing(self, client):
        product = await _create(client, price=89.0)
        url = f"/api/v1/products/{product['id']}"
        await client.get(url, headers=ALICE)
        await client.get("/api/v1/products", headers=ALICE)

        update = await client.put(url, json={"price": 99.0}, headers=ALICE)
        assert update.status_code == 200

        detail = await client.get(url, headers=ALICE)
        listing = await client.get("/api/v1/products", headers=ALICE)
        assert detail.headers["X-Cache"] == "MISS"
        assert detail.json()["price"] == 99.0
        assert listing.json()["products"][0]["price"] == 99.0

    @pytest.mark.asyncio
    async def test_delete_invalidates(self, client):
        product = await _create(client)
        await client.get("/api/v1/products", headers=ALICE)

        response = await client.delete(f"/api/v1/products/{product['id']}", headers=ALICE)
        assert response.status_code == 204

        listing = await client.get("/api/v1/products", headers=ALICE)
        assert listing.json()["total"] == 0

    @pytest.mark.asyncio
    async def test_other_users_product_not_found(self, client):
        product = await _create(client, headers=ALICE)
        url = f"/api/v1/products/{product['id']}"

        assert (await client.get(url, headers=BOB)).status_code == 404
        assert (await client.put(url, json={"price": 1.0}, headers=BOB)).status_code == 404
        assert (await client.delete(url, headers=BOB)).status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_status_rejected(self, client):
        response = await client.post(
            "/api/v1/products", json={"name": "x", "status": "deleted"}, headers=ALICE
        )
        assert response.status_code == 422
