from fastapi.testclient import TestClient

from services.indexer.src.indexer.main import app

client = TestClient(app)


def test_health_without_indexer():
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["indexer_state"] == "disabled"
    assert body["last_processed_block"] is None
