"""Tests for the hwmgr server endpoints."""

# Client fixture is inherited from conftest.py

EDGE = {"profiles": [{"name": "edge-profile", "nodes": ["n1", "n2", "n3"]}]}


def _load_profiles(client, catalog=EDGE):
    response = client.put("/v1/hwprofiles", json=catalog)
    assert response.status_code == 200


def _create_pool(client, pool_id="p1", size=2, profile="edge-profile"):
    return client.post(
        "/v1/nodepools",
        json={"id": pool_id, "node_groups": [{"name": "g1", "hwProfile": profile, "size": size}]},
    )


def _reconcile_until_done(client, pool_id="p1", limit=10):
    for _ in range(limit):
        data = client.post(f"/v1/nodepools/{pool_id}/reconcile").json()
        if data["requeue_after"] is None:
            return data
    raise AssertionError(f"{pool_id} did not settle")


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test that health endpoint returns healthy status."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data

    def test_tracing_headers(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "abc123"})
        assert response.headers["X-Correlation-ID"] == "abc123"
        assert "X-Request-ID" in response.headers


class TestHwProfilesEndpoint:
    """Tests for the hardware profile catalog endpoints."""

    def test_no_catalog_yet(self, client):
        response = client.get("/v1/hwprofiles")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_replace_and_get(self, client):
        _load_profiles(client)

        response = client.get("/v1/hwprofiles")
        assert response.status_code == 200
        assert response.json() == EDGE

    def test_free_nodes(self, client):
        _load_profiles(client)

        data = client.get("/v1/hwprofiles/edge-profile/free").json()
        assert data == {"profile": "edge-profile", "free": ["n1", "n2", "n3"], "count": 3}

        data = client.get("/v1/hwprofiles/unknown/free").json()
        assert data["count"] == 0

    def test_invalid_catalog(self, client):
        response = client.put("/v1/hwprofiles", json={"profiles": [{"nodes": ["n1"]}]})
        assert response.status_code == 422


class TestNodePoolEndpoints:
    """Tests for node pool CRUD."""

    def test_create_pool(self, client):
        response = _create_pool(client)
        assert response.status_code == 201
        data = response.json()
        assert data["id"] == "p1"
        assert data["state"] == "NoConditions"
        assert data["generation"] == 1
        assert data["node_groups"] == [{"name": "g1", "hwProfile": "edge-profile", "size": 2}]

    def test_duplicate_pool(self, client):
        _create_pool(client)
        response = _create_pool(client)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_exists"

    def test_negative_size_rejected(self, client):
        response = _create_pool(client, size=-1)
        assert response.status_code == 422

    def test_duplicate_group_names_rejected(self, client):
        groups = [
            {"name": "g", "hwProfile": "a", "size": 1},
            {"name": "g", "hwProfile": "b", "size": 1},
        ]
        response = client.post("/v1/nodepools", json={"id": "p1", "node_groups": groups})
        assert response.status_code == 422
        assert "duplicate node group name" in response.text
        assert client.get("/v1/nodepools/p1").status_code == 404

        _create_pool(client)
        response = client.put("/v1/nodepools/p1", json={"node_groups": groups})
        assert response.status_code == 422
        assert client.get("/v1/nodepools/p1").json()["generation"] == 1

    def test_get_missing_pool(self, client):
        response = client.get("/v1/nodepools/ghost")
        assert response.status_code == 404
        assert "ghost" in response.json()["error"]["message"]

    def test_update_bumps_generation(self, client):
        _create_pool(client)

        response = client.put(
            "/v1/nodepools/p1",
            json={"node_groups": [{"name": "g1", "hwProfile": "edge-profile", "size": 3}]},
        )
        assert response.status_code == 200
        assert response.json()["generation"] == 2

        # Same groups again is not an edit
        response = client.put(
            "/v1/nodepools/p1",
            json={"node_groups": [{"name": "g1", "hwProfile": "edge-profile", "size": 3}]},
        )
        assert response.json()["generation"] == 2

    def test_list_pools_by_state(self, client):
        _load_profiles(client)
        _create_pool(client, "a", size=1)
        _create_pool(client, "b", size=1)
        _reconcile_until_done(client, "a")

        data = client.get("/v1/nodepools").json()
        assert data["count"] == 2

        data = client.get("/v1/nodepools", params={"state": "Provisioned"}).json()
        assert [p["id"] for p in data["pools"]] == ["a"]

    def test_delete_pool(self, client):
        _load_profiles(client)
        _create_pool(client)
        _reconcile_until_done(client)

        response = client.delete("/v1/nodepools/p1")
        assert response.status_code == 200
        assert sorted(response.json()["released"]) == ["n1", "n2"]

        assert client.get("/v1/nodepools/p1").status_code == 404
        assert client.get("/v1/nodes").json()["count"] == 0
        assert client.delete("/v1/nodepools/p1").status_code == 404

    def test_delete_pool_before_catalog_loaded(self, client):
        _create_pool(client)

        response = client.delete("/v1/nodepools/p1")
        assert response.status_code == 200
        assert response.json()["released"] == []
        assert client.get("/v1/nodepools/p1").status_code == 404


class TestReconcileEndpoint:
    """Tests for on-demand reconciliation."""

    def test_reconcile_to_provisioned(self, client):
        _load_profiles(client)
        _create_pool(client)

        admitted = client.post("/v1/nodepools/p1/reconcile").json()
        assert admitted["state"] == "Unprovisioned"
        assert admitted["requeue_after"] == 15.0

        data = _reconcile_until_done(client)
        assert data["state"] == "Provisioned"

        pool = client.get("/v1/nodepools/p1").json()
        assert pool["state"] == "Provisioned"
        assert pool["allocated_nodes"] == ["n1", "n2"]
        assert pool["observed_generation"] == 1

        allocations = client.get("/v1/allocations").json()
        assert allocations == {"clouds": [{"cloudID": "p1", "nodegroups": {"g1": ["n1", "n2"]}}]}

    def test_reconcile_failed_request(self, client):
        _load_profiles(client, {"profiles": [{"name": "edge-profile", "nodes": ["n1"]}]})
        _create_pool(client)

        data = client.post("/v1/nodepools/p1/reconcile").json()
        assert data["state"] == "Failed"
        assert data["requeue_after"] is None
        failed = [c for c in data["conditions"] if c["type"] == "Failed"][0]
        assert "needed=2, available=1" in failed["message"]

    def test_reconcile_without_inventory(self, client):
        _create_pool(client)

        response = client.post("/v1/nodepools/p1/reconcile")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "store_unavailable"

    def test_reconcile_missing_pool(self, client):
        response = client.post("/v1/nodepools/ghost/reconcile")
        assert response.status_code == 404


class TestNodesEndpoint:
    """Tests for node listing."""

    def test_list_nodes_by_pool(self, client):
        _load_profiles(client)
        _create_pool(client, "a", size=2)
        _create_pool(client, "b", size=1)
        _reconcile_until_done(client, "a")
        _reconcile_until_done(client, "b")

        data = client.get("/v1/nodes", params={"pool": "b"}).json()
        assert data["count"] == 1
        assert data["nodes"][0]["name"] == "n3"
        assert data["nodes"][0]["group_name"] == "g1"

        assert client.get("/v1/nodes").json()["count"] == 3

    def test_get_node(self, client):
        _load_profiles(client)
        _create_pool(client, size=1)
        _reconcile_until_done(client)

        data = client.get("/v1/nodes/n1").json()
        assert data["node_pool"] == "p1"
        assert data["hw_profile"] == "edge-profile"
        assert client.get("/v1/nodes/n9").status_code == 404


class TestMetricsEndpoint:
    """Tests for the /metrics endpoints."""

    def test_metrics_endpoint_returns_text(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]

    def test_metrics_include_request_counts(self, client):
        client.get("/health")

        content = client.get("/metrics").text
        assert "hwmgr_http_requests_total" in content

    def test_reconcile_records_metrics(self, client):
        _load_profiles(client)
        _create_pool(client, size=1)
        _reconcile_until_done(client)

        stats = client.get("/metrics/json").json()
        assert "hwmgr_reconcile_total" in stats["counters"]
        assert "hwmgr_node_allocations_total" in stats["counters"]
        assert "hwmgr_reconcile_duration_seconds" in stats["histograms"]
