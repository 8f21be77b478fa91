from conftest import ADMIN_HEADERS, BORROWER_HEADERS, make_definition


def _seed(store, *definitions):
    for definition in definitions:
        store.rows[definition.id] = definition


def test_list_requires_actor_role(client):
    response = client.get("/api/v1/fields/application")
    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "unauthorized"
    assert body["data"] is None


def test_list_returns_enveloped_resolved_fields(client, store):
    _seed(
        store,
        make_definition("borrower_name", category="borrower", display_order=0),
        make_definition("internal_notes", category="admin", display_order=1, visible_to_roles=["Administrator"]),
    )

    response = client.get("/api/v1/fields/application", headers=BORROWER_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["code"] == "ok"
    assert [item["field_name"] for item in body["data"]["fields"]] == ["borrower_name"]
    assert body["data"]["categories"][0]["key"] == "borrower"
    assert response.headers.get("x-request-id")


def test_unknown_context_is_rejected(client):
    response = client.get("/api/v1/fields/underwriting", headers=ADMIN_HEADERS)
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_create_requires_manager_role(client):
    response = client.post(
        "/api/v1/fields/application",
        json={"field_name": "loan_amount", "category": "loan"},
        headers=BORROWER_HEADERS,
    )
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_create_field(client, store):
    response = client.post(
        "/api/v1/fields/application",
        json={
            "field_name": "loan_amount",
            "category": "loan",
            "field_type": "currency",
            "value_conditional": {"type": "formula", "formula": "{{price}} * 0.8"},
        },
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["code"] == "created"
    assert body["data"]["field_label"] == "Loan Amount"
    assert body["data"]["value_conditional"] == {"type": "formula", "formula": "{{price}} * 0.8"}
    assert len(store.rows) == 1


def test_create_validation_error_envelope(client, store):
    _seed(store, make_definition("loan_amount"))
    response = client.post(
        "/api/v1/fields/application",
        json={"field_name": "loan_amount", "category": "loan"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "field_validation_error"
    assert body["details"]["errors"]


def test_update_and_delete(client, store):
    existing = make_definition("notes")
    _seed(store, existing)

    patched = client.patch(
        f"/api/v1/fields/application/{existing.id}",
        json={"required": True},
        headers=ADMIN_HEADERS,
    )
    assert patched.status_code == 200
    assert patched.json()["data"]["required"] is True

    deleted = client.delete(f"/api/v1/fields/application/{existing.id}", headers=ADMIN_HEADERS)
    assert deleted.status_code == 200
    assert deleted.json()["data"] is None
    assert existing.id not in store.rows


def test_update_unknown_field_is_404(client):
    response = client.patch("/api/v1/fields/loan/missing", json={"required": True}, headers=ADMIN_HEADERS)
    assert response.status_code == 404
    assert response.json()["details"]["field_id"] == "missing"


def test_catalog_unavailable_is_503(client, store):
    store.unavailable = True
    response = client.get("/api/v1/fields/application", headers=ADMIN_HEADERS)
    assert response.status_code == 503
    assert response.json()["code"] == "catalog_unavailable"


def test_reorder_category_move(client, store):
    alpha = make_definition("a1", category="alpha", display_order=0)
    beta = make_definition("b1", category="beta", display_order=1)
    _seed(store, alpha, beta)

    response = client.post(
        "/api/v1/fields/application/reorder",
        json={"type": "category", "source_index": 1, "destination_index": 0},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_fields"] == 2
    assert {item["id"]: item["display_order"] for item in data["updated"]} == {beta.id: 0, alpha.id: 1}


def test_reorder_partial_failure_is_409(client, store):
    alpha = make_definition("a1", category="alpha", display_order=0)
    beta = make_definition("b1", category="beta", display_order=1)
    _seed(store, alpha, beta)
    store.failing_ids = {alpha.id}

    response = client.post(
        "/api/v1/fields/application/reorder",
        json={"type": "category", "source_index": 1, "destination_index": 0},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "partial_reorder_failure"
    assert body["details"]["failed_ids"] == [alpha.id]
    assert body["details"]["applied_ids"] == [beta.id]


def test_evaluate_returns_computed_record_and_visibility(client, store):
    _seed(
        store,
        make_definition("has_coborrowers", field_type="checkbox"),
        make_definition(
            "co_borrower_ssn",
            display_conditional={"field": "has_coborrowers", "operator": "equals", "value": True},
        ),
        make_definition(
            "after_repair_value",
            value_conditional={"type": "formula", "formula": "{{purchase_price}} + {{rehab_budget}}"},
        ),
        make_definition("broken", value_conditional={"type": "formula", "formula": "{{a}} ++ "}),
        make_definition("admin_only", visible_to_roles=["Administrator"]),
    )

    response = client.post(
        "/api/v1/fields/application/evaluate",
        json={
            "record": {"has_coborrowers": "true", "purchase_price": 100000, "rehab_budget": 25000, "broken": 7},
        },
        headers=BORROWER_HEADERS,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["record"]["after_repair_value"] == 125000
    assert data["record"]["broken"] == 7
    assert data["visibility"]["co_borrower_ssn"] is True
    assert "admin_only" not in data["visibility"]
    assert {item["field_name"] for item in data["diagnostics"]} == {"broken"}
    assert "formula_error" in {item["kind"] for item in data["diagnostics"]}


def test_role_cleanup_endpoint(client, store):
    _seed(
        store,
        make_definition("a", visible_to_roles=["Guarantor", "Borrower"]),
        make_definition("b", context="loan", visible_to_roles=["referrer"]),
        make_definition("c", visible_to_roles=["Borrower"]),
    )

    response = client.post("/api/v1/fields/maintenance/role-cleanup", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json()["data"] == {"updated": 2}
    assert sorted(tuple(item.visible_to_roles) for item in store.rows.values()) == [
        ("Borrower",),
        ("Borrower",),
        ("Referral Partner",),
    ]


def test_evaluate_omits_computed_values_for_hidden_fields(client, store):
    _seed(
        store,
        make_definition("status"),
        make_definition(
            "internal_grade",
            visible_to_roles=["Administrator"],
            value_conditional={
                "type": "conditional_value",
                "rules": [
                    {
                        "condition_field": "status",
                        "condition_operator": "equals",
                        "condition_value": "approved",
                        "result_value": "A+",
                    }
                ],
            },
        ),
        make_definition("admin_note", visible_to_roles=["Administrator"]),
    )

    as_borrower = client.post(
        "/api/v1/fields/application/evaluate",
        json={"record": {"status": "approved", "admin_note": "typed by the user"}},
        headers=BORROWER_HEADERS,
    )
    assert as_borrower.status_code == 200
    record = as_borrower.json()["data"]["record"]
    assert "internal_grade" not in record
    assert record["admin_note"] == "typed by the user"

    as_admin = client.post(
        "/api/v1/fields/application/evaluate",
        json={"record": {"status": "approved"}},
        headers=ADMIN_HEADERS,
    )
    assert as_admin.json()["data"]["record"]["internal_grade"] == "A+"


def test_evaluate_treats_nan_as_missing(client, store):
    _seed(
        store,
        make_definition(
            "jumbo_terms",
            display_conditional={"field": "loan_amount", "operator": "greater_than", "value": 1000000},
        ),
    )

    response = client.post(
        "/api/v1/fields/application/evaluate",
        content='{"record": {"loan_amount": NaN}}',
        headers={**BORROWER_HEADERS, "content-type": "application/json"},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["record"]["loan_amount"] is None
    assert data["visibility"]["jumbo_terms"] is False
