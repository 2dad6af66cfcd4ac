from fastapi.testclient import TestClient

from dockserve import db
from dockserve.api import create_app
from dockserve.mesh import TailscaleCLI
from dockserve.reconciler import Reconciler
from dockserve.runtime import RuntimeState
from fakes import FakeDocker, FakeTailscale, make_container, web_labels


def make_reconciler():
    docker = FakeDocker([make_container("web", web_labels("web", 8080))])
    return Reconciler(docker, TailscaleCLI(runner=FakeTailscale()), RuntimeState())


def test_health_and_status():
    rec = make_reconciler()
    rec.reconcile_once("startup")
    client = TestClient(create_app(rec.runtime, rec))

    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy", "state": "idle"}

    body = client.get("/status").json()
    assert body["passes"] == 1
    assert body["last_pass"]["created"] == ["svc:web"]
    assert body["funnels"] == {}


def test_events():
    db.log_event("INFO", "hello", service_name="svc:web")
    client = TestClient(create_app(RuntimeState()))

    events = client.get("/events", params={"limit": 5}).json()
    assert events[0]["message"] == "hello"
    assert events[0]["service_name"] == "svc:web"
    assert client.get("/events", params={"limit": 0}).status_code == 422


def test_reconcile_is_queued_once():
    rec = make_reconciler()
    client = TestClient(create_app(rec.runtime, rec))

    r = client.post("/reconcile")
    assert r.status_code == 202
    assert r.json() == {"queued": True}
    assert client.post("/reconcile").json() == {"queued": False}


def test_reconcile_unavailable():
    assert TestClient(create_app(RuntimeState())).post("/reconcile").status_code == 503

    rec = make_reconciler()
    rec.stop()
    assert TestClient(create_app(rec.runtime, rec)).post("/reconcile").status_code == 503
