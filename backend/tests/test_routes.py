# Overview: Pytest coverage for the HTTP API surface.

"""
API Tests

- Company context is mandatory on every engine route
- Inventory, marketplace, categorization and cash ledger endpoints map
  service outcomes and errors to status codes
"""

from backoffice.models import ProductSku

from conftest import company_headers


class TestSystem:
    def test_health(self, client, db_session):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.get_json()["checks"]["database"]["status"] == "healthy"

    def test_version(self, client, db_session):
        response = client.get("/api/version")

        assert response.status_code == 200
        assert "api_version" in response.get_json()

    def test_cors_only_for_configured_origins(self, app, client, db_session, monkeypatch):
        monkeypatch.setitem(app.config, "CORS_ALLOWED_ORIGINS", ["https://backoffice.example.com"])

        allowed = client.get("/api/version", headers={"Origin": "https://backoffice.example.com"})
        other = client.get("/api/version", headers={"Origin": "http://localhost:5173"})

        assert allowed.headers["Access-Control-Allow-Origin"] == "https://backoffice.example.com"
        assert "Access-Control-Allow-Origin" not in other.headers


class TestCompanyContext:
    def test_missing_header(self, client, db_session, product_a):
        response = client.get(f"/api/inventory/cost?product_id={product_a.id}")

        assert response.status_code == 400
        assert "Company context" in response.get_json()["error"]

    def test_unknown_company(self, client, db_session):
        response = client.get("/api/inventory/summary", headers={"X-Company-Id": "9999"})

        assert response.status_code == 400

    def test_malformed_company(self, client, db_session):
        response = client.get("/api/inventory/summary", headers={"X-Company-Id": "abc"})

        assert response.status_code == 400

    def test_other_company_cannot_read_product(self, client, db_session, company_b, product_a):
        response = client.get(
            f"/api/inventory/cost?product_id={product_a.id}", headers=company_headers(company_b)
        )

        assert response.status_code == 400


class TestInventoryApi:
    def test_entry_then_exit(self, client, db_session, company_a, product_a):
        headers = company_headers(company_a)

        entry = client.post("/api/inventory/entries", headers=headers, json={
            "product_id": product_a.id, "quantity": 10, "unit_cost": "5.00",
        })
        client.post("/api/inventory/entries", headers=headers, json={
            "product_id": product_a.id, "quantity": 10, "unit_cost": "7.00",
        })
        exit_ = client.post("/api/inventory/exits", headers=headers, json={
            "product_id": product_a.id, "quantity": 5, "reference_id": "PED-1",
        })
        repeat = client.post("/api/inventory/exits", headers=headers, json={
            "product_id": product_a.id, "quantity": 5, "reference_id": "PED-1",
        })

        assert entry.status_code == 201
        assert exit_.status_code == 201
        assert exit_.get_json()["cogs"]["total_cost"] == "30.00"
        assert repeat.status_code == 200
        assert repeat.get_json()["already_posted"] is True

        cost = client.get(f"/api/inventory/cost?product_id={product_a.id}", headers=headers).get_json()
        assert cost["quantity_on_hand"] == 15
        assert cost["unit_cost"] == "6.000000"

    def test_invalid_entry_rejected(self, client, db_session, company_a, product_a):
        headers = company_headers(company_a)

        missing = client.post("/api/inventory/entries", headers=headers, json={"product_id": product_a.id})
        negative = client.post("/api/inventory/entries", headers=headers, json={
            "product_id": product_a.id, "quantity": -1, "unit_cost": "5.00",
        })
        unknown = client.post("/api/inventory/entries", headers=headers, json={
            "product_id": product_a.id, "quantity": 1, "unit_cost": "5.00", "average_cost_after": "1",
        })

        assert missing.status_code == 400
        assert negative.status_code == 400
        assert unknown.status_code == 400

    def test_block_policy_returns_conflict(self, app, client, db_session, company_a, product_a):
        app.config["NEGATIVE_STOCK_POLICY"] = "block"

        response = client.post("/api/inventory/exits", headers=company_headers(company_a), json={
            "product_id": product_a.id, "quantity": 1, "reference_id": "PED-2",
        })

        assert response.status_code == 409

    def test_reverse_unknown_reference(self, client, db_session, company_a):
        response = client.post("/api/inventory/exits/reverse", headers=company_headers(company_a), json={
            "source": "SALE", "reference_id": "NOPE",
        })

        assert response.status_code == 404

    def test_adjustment_requires_new_quantity(self, client, db_session, company_a, product_a):
        response = client.post("/api/inventory/adjustments", headers=company_headers(company_a), json={
            "product_id": product_a.id,
        })

        assert response.status_code == 400

    def test_adjustment(self, client, db_session, company_a, product_a):
        headers = company_headers(company_a)
        client.post("/api/inventory/entries", headers=headers, json={
            "product_id": product_a.id, "quantity": 4, "unit_cost": "2.50",
        })

        response = client.post("/api/inventory/adjustments", headers=headers, json={
            "product_id": product_a.id, "new_quantity": "6",
        })

        assert response.status_code == 201
        assert response.get_json()["cost"] == {"unit_cost": "2.500000", "quantity_on_hand": 6}

    def test_purchase(self, client, db_session, company_a, sku_product_a):
        sku = db_session.query(ProductSku).filter_by(sku_code="TEN-100-40").one()

        response = client.post("/api/inventory/purchases", headers=company_headers(company_a), json={
            "id": "PC-1", "items": [{"sku_id": sku.id, "quantity": 3, "unit_cost": "99.90"}],
        })

        assert response.status_code == 200
        assert response.get_json()["entries_posted"] == 1

    def test_summary(self, client, db_session, company_a, product_a):
        headers = company_headers(company_a)
        client.post("/api/inventory/entries", headers=headers, json={
            "product_id": product_a.id, "quantity": 3, "unit_cost": "10.00",
        })

        summary = client.get("/api/inventory/summary", headers=headers).get_json()

        assert summary["total_units"] == 3
        assert summary["stock_value"] == "30.00"
        assert summary["low_stock"] == 1


class TestMarketplaceApi:
    def test_import_then_stock_exit(self, client, db_session, company_a, product_a):
        headers = company_headers(company_a)
        client.post("/api/inventory/entries", headers=headers, json={
            "product_id": product_a.id, "quantity": 5, "unit_cost": "20.00",
        })

        imported = client.post("/api/marketplace/transactions/import", headers=headers, json={
            "channel": "mercado_livre",
            "rows": [{
                "transaction_date": "2024-03-01",
                "description": "Venda Camiseta",
                "order_id": "2000001",
                "net_amount": "90.00",
                "items": [{"external_sku": "CAM-001", "quantity": 1, "unit_price": "100.00"}],
            }],
        })
        transaction_id = imported.get_json()["transaction_ids"][0]
        exit_ = client.post(f"/api/marketplace/transactions/{transaction_id}/stock-exit", headers=headers)

        assert imported.status_code == 200
        assert exit_.status_code == 200
        assert exit_.get_json()["costed"] == 1

        detail = client.get(f"/api/marketplace/transactions/{transaction_id}", headers=headers).get_json()
        assert detail["transaction"]["items"][0]["cost_status"] == "COSTED"

    def test_stock_exit_unknown_transaction(self, client, db_session, company_a):
        response = client.post("/api/marketplace/transactions/777/stock-exit", headers=company_headers(company_a))

        assert response.status_code == 404

    def test_resolve_preview(self, client, db_session, company_a, product_a):
        response = client.post("/api/marketplace/resolve", headers=company_headers(company_a), json={
            "channel": "shopee", "external_sku": "cam-001", "preview": True,
        })

        body = response.get_json()
        assert body["resolved"] is True
        assert body["product_id"] == product_a.id
        assert body["mapping_id"] is None

    def test_manual_mapping(self, client, db_session, company_a, product_a):
        headers = company_headers(company_a)

        created = client.post("/api/marketplace/mappings", headers=headers, json={
            "channel": "Shopee", "external_sku": "SHP-1", "product_id": product_a.id,
        })
        listed = client.get("/api/marketplace/mappings?channel=shopee", headers=headers).get_json()

        assert created.status_code == 201
        assert [m["external_sku"] for m in listed["items"]] == ["SHP-1"]


class TestCategorizationApi:
    def test_learn_then_suggest(self, client, db_session, company_a):
        headers = company_headers(company_a)
        categories = client.get("/api/categorization/categories", headers=headers).get_json()
        assert categories["categories"] == []

        suggestion = client.post("/api/categorization/suggest", headers=headers, json={
            "channel": "mercado_livre", "description": "Tarifa de venda", "amount": "-3.00",
        }).get_json()
        assert suggestion["matched"] is True
        assert suggestion["source"] == "HEURISTIC"

        learned = client.post("/api/categorization/learn", headers=headers, json={
            "establishment": "Padaria Sao Joao",
            "category_id": suggestion["category_id"],
            "cost_center_id": suggestion["cost_center_id"],
        })
        assert learned.status_code == 200
        assert learned.get_json()["confidence"] == 20

        again = client.post("/api/categorization/suggest", headers=headers, json={
            "channel": "card", "description": "PADARIA", "establishment": "Padaria São João", "amount": "-9.00",
        }).get_json()
        assert again["source"] == "LEARNED"
        assert again["confidence"] == 20

    def test_learn_requires_establishment(self, client, db_session, company_a):
        response = client.post("/api/categorization/learn", headers=company_headers(company_a), json={
            "category_id": 1,
        })

        assert response.status_code == 400

    def test_suggest_unknown_transaction(self, client, db_session, company_a):
        response = client.post("/api/categorization/suggest", headers=company_headers(company_a), json={
            "transaction_id": 555,
        })

        assert response.status_code == 404


class TestLedgerApi:
    def test_manual_movement_and_balance(self, client, db_session, company_a):
        headers = company_headers(company_a)
        body = {
            "source_record_id": "APORTE-1",
            "kind": "INFLOW",
            "movement_date": "2024-06-01",
            "description": "Aporte de capital",
            "amount": "500.00",
        }

        created = client.post("/api/ledger/cash-movements", headers=headers, json=body)
        updated = client.post("/api/ledger/cash-movements", headers=headers, json={**body, "amount": "650.00"})
        balance = client.get("/api/ledger/balance", headers=headers).get_json()

        assert created.status_code == 201
        assert updated.status_code == 200
        assert balance == {"movements": 1, "inflow": "650.00", "outflow": "0.00", "net": "650.00"}

        removed = client.delete("/api/ledger/cash-movements/MANUAL/APORTE-1", headers=headers)
        assert removed.status_code == 200
        assert client.delete("/api/ledger/cash-movements/MANUAL/APORTE-1", headers=headers).status_code == 404

    def test_sync_and_pending(self, client, db_session, company_a):
        headers = company_headers(company_a)

        pending = client.get("/api/ledger/pending", headers=headers).get_json()
        synced = client.post("/api/ledger/sync", headers=headers)

        assert pending["total"] == 0
        assert synced.status_code == 200
        assert synced.get_json()["total_synced"] == 0

    def test_bad_period(self, client, db_session, company_a):
        response = client.get("/api/ledger/balance?start=01/06/2024", headers=company_headers(company_a))

        assert response.status_code == 400

    def test_statement_import(self, client, db_session, company_a):
        headers = company_headers(company_a)
        body = {
            "origin": "card",
            "categorize": False,
            "rows": [{"transaction_date": "2024-06-03", "description": "PADARIA SAO JOAO", "amount": "23.90"}],
        }

        first = client.post("/api/ledger/statements/import", headers=headers, json=body)
        again = client.post("/api/ledger/statements/import", headers=headers, json=body)
        bad_origin = client.post("/api/ledger/statements/import", headers=headers, json={**body, "origin": "pix"})
        bad_rows = client.post("/api/ledger/statements/import", headers=headers, json={"origin": "BANK"})

        assert first.status_code == 200
        assert first.get_json()["origin"] == "CARD"
        assert first.get_json()["inserted"] == 1
        assert again.get_json()["duplicates"] == 1
        assert bad_origin.status_code == 400
        assert bad_rows.status_code == 400
