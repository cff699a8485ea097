"""
Unit tests for Rules main service.
"""

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_rules.app.adapters.rule_store import InMemoryRuleStore
from service_rules.app.main import RulesService
from service_rules.app.rules.models import Rule, RuleSet, Schema


ORDER = {
    "id": 1,
    "name": "Order",
    "properties": [
        {"name": "id", "type": "integer"},
        {"name": "amount", "type": "number"},
        {"name": "status", "type": "string", "defaultValue": "NEW"}
    ]
}

RISK_SCORE = {
    "id": 2,
    "name": "RiskScore",
    "properties": [
        {"name": "riskLevel", "type": "string"},
        {"name": "riskScore", "type": "integer", "defaultValue": 0}
    ]
}

HIGH_VALUE_RULE = {
    "id": 10,
    "name": "High value",
    "schemaId": 1,
    "projectId": 100,
    "priority": 10,
    "conditions": {"operator": "all", "conditions": [{"fact": "amount", "operator": "greaterThan", "value": 10000}]},
    "actions": [
        {"type": "MODIFY", "targetField": "status", "value": "FLAGGED"},
        {"type": "INSERT", "factType": "RiskScore", "factData": {"riskLevel": "HIGH"}}
    ]
}


class TestRulesService:
    """Test cases for RulesService."""

    @pytest.fixture
    def store(self):
        """Create in-memory rule store."""
        return InMemoryRuleStore(
            schemas=[Schema.model_validate(ORDER), Schema.model_validate(RISK_SCORE)],
            projects=[RuleSet(id=100, name="Orders", input_schema_ids=[1], output_schema_ids=[2])],
            rules=[Rule.model_validate(HIGH_VALUE_RULE)]
        )

    @pytest.fixture
    def service(self, store):
        """Create RulesService instance."""
        return RulesService(store=store, config=get_config("rules", 8020))

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        with TestClient(service.app) as client:
            yield client

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "rules"
        assert "execution" in data["capabilities"]

    def test_health_endpoint(self, client):
        """Test health endpoint reports the rule store."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"rule_store": "ok"}

    def test_execute(self, client):
        """Test executing a rule-set."""
        response = client.post("/projects/100/execute", json={"facts": [{"id": 1, "amount": 15000}]})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["dryRun"] is False
        assert data["firedRules"] == [{"ruleId": 10, "ruleName": "High value", "fireCount": 1, "error": None}]
        assert data["resultFacts"] == [
            {"id": 1, "amount": 15000, "status": "FLAGGED"},
            {"riskLevel": "HIGH", "riskScore": 0}
        ]
        assert "executionTimeMs" in data
        assert data["webhookResults"] == []

    def test_execute_dry_run(self, client, store):
        """Test dry-run executions are flagged and recorded as such."""
        response = client.post("/projects/100/execute", json={"facts": [{"amount": 20000}], "dryRun": True})

        assert response.status_code == 200
        assert response.json()["dryRun"] is True

    def test_execute_malformed_facts(self, client):
        """Test malformed input yields an unsuccessful report."""
        response = client.post("/projects/100/execute", json={"facts": ["not an object"]})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert "Malformed input fact #0" in data["errorMessage"]

    def test_execute_unparsable_body(self, client):
        """Test a body that is not valid JSON yields an unsuccessful report."""
        response = client.post(
            "/projects/100/execute",
            content=b'{"facts": [',
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["errorMessage"].startswith("Malformed input")
        assert data["firedRules"] == []
        assert data["resultFacts"] == []

    def test_execute_badly_typed_field(self, client):
        """Test a mistyped request field yields an unsuccessful report naming the field."""
        response = client.post("/projects/100/execute", json={"facts": [], "dryRun": "maybe"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert "dryRun" in data["errorMessage"]

    def test_execute_unknown_project(self, client):
        """Test unknown rule-sets yield an unsuccessful report."""
        response = client.post("/projects/999/execute", json={"facts": []})

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_validate_rule(self, client):
        """Test validating a well-formed rule."""
        response = client.post("/rules/validate", json=HIGH_VALUE_RULE)

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert len(data["modelHash"]) == 64
        assert 'rule "High value"' in data["artifact"]

    def test_validate_rule_with_unknown_path(self, client):
        """Test validation errors are returned as 422."""
        rule = dict(HIGH_VALUE_RULE, conditions={
            "operator": "all",
            "conditions": [{"fact": "customer.tier", "operator": "equals", "value": "GOLD"}]
        })

        response = client.post("/rules/validate", json=rule)

        assert response.status_code == 422
        data = response.json()
        assert data["code"] == "PATH_NOT_FOUND"
        assert data["details"]["path"] == "customer.tier"

    def test_validate_rule_schema_outside_rule_set(self, client):
        """Test a rule whose schema is not an input of its rule-set."""
        response = client.post("/rules/validate", json=dict(HIGH_VALUE_RULE, schemaId=2))

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_save_rule(self, client, service):
        """Test saving stores the compiled artifact and drops cached compilations."""
        client.post("/projects/100/execute", json={"facts": [{"amount": 1}]})
        assert service.cache.size() == 1

        rule = dict(HIGH_VALUE_RULE, priority=20)
        response = client.post("/rules", json=rule)

        assert response.status_code == 200
        data = response.json()
        assert data["priority"] == 20
        assert data["compiledHash"]
        assert "salience 20" in data["compiledArtifact"]
        assert service.cache.size() == 0

    def test_save_new_rule_assigns_id(self, client):
        """Test new rules get an id."""
        rule = dict(HIGH_VALUE_RULE, id=None, name="Another")

        response = client.post("/rules", json=rule)

        assert response.status_code == 200
        assert response.json()["id"] == 1

    def test_save_rule_that_does_not_compile(self, client):
        """Test a compilation failure keeps the previous artifact."""
        regenerated = client.post("/rules/10/regenerate").json()
        rule = dict(HIGH_VALUE_RULE, conditions={
            "operator": "all",
            "conditions": [{"fact": "status", "operator": "matches", "value": "([A-Z"}]
        })

        response = client.post("/rules", json=rule)

        assert response.status_code == 200
        data = response.json()
        assert data["compiledHash"] == regenerated["compiledHash"]
        assert data["conditions"]["conditions"][0]["operator"] == "matches"

    def test_save_invalid_rule(self, client):
        """Test invalid rules are rejected."""
        rule = dict(HIGH_VALUE_RULE, actions=[{"type": "INSERT", "factType": "Invoice", "factData": {}}])

        response = client.post("/rules", json=rule)

        assert response.status_code == 422

    def test_regenerate_and_artifact(self, client):
        """Test regenerating brings the stored artifact up to date."""
        before = client.get("/rules/10/artifact").json()
        assert before["upToDate"] is False
        assert before["storedHash"] is None

        regenerated = client.post("/rules/10/regenerate")
        assert regenerated.status_code == 200
        again = client.post("/rules/10/regenerate").json()
        assert again["compiledArtifact"] == regenerated.json()["compiledArtifact"]

        after = client.get("/rules/10/artifact").json()
        assert after["upToDate"] is True
        assert after["modelHash"] == after["storedHash"]
        assert after["artifact"] == again["compiledArtifact"]

    def test_artifact_of_unknown_rule(self, client):
        """Test unknown rules return 404."""
        response = client.get("/rules/999/artifact")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_match_payload(self, client):
        """Test generating a fact that matches a stored rule."""
        response = client.get("/rules/10/match-payload")

        assert response.status_code == 200
        assert response.json() == {"amount": 10001}

    def test_match_payload_unsatisfiable(self, client, store):
        """Test contradictory conditions are reported."""
        rule = Rule.model_validate(dict(HIGH_VALUE_RULE, id=11, conditions={
            "operator": "all",
            "conditions": [
                {"fact": "amount", "operator": "greaterThan", "value": 100},
                {"fact": "amount", "operator": "lessThan", "value": 50}
            ]
        }))
        store.rules["11"] = rule

        response = client.get("/rules/11/match-payload")

        assert response.status_code == 422
        assert response.json()["code"] == "UNSATISFIABLE_CONSTRAINTS"

    def test_invalidate_cache(self, client):
        """Test dropping a rule-set's compiled rules."""
        client.post("/projects/100/execute", json={"facts": [{"amount": 1}]})

        response = client.delete("/projects/100/cache")

        assert response.status_code == 200
        assert response.json() == {"projectId": "100", "invalidated": 1}
