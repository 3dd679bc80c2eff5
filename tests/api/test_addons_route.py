from __future__ import annotations

from cp_fakes import PREFIX, FakeHelmRunner, make_client

RELEASES = [
    {
        "name": "redis",
        "namespace": "default",
        "revision": "2",
        "updated": "2024-01-01 10:00:00.000000 +0000 UTC",
        "status": "deployed",
        "chart": "redis-17.3.14",
        "app_version": "7.0.5",
    },
    {
        "name": "cert-manager",
        "namespace": "cert-manager",
        "revision": "1",
        "status": "deployed",
        "chart": "cert-manager-v1.12.0",
    },
    {"name": "web-app", "namespace": "default", "revision": "9", "status": "deployed", "chart": "web-0.50.0"},
    {"name": "postgres", "namespace": "data", "revision": "1", "status": "failed", "chart": "postgresql-12.1.6"},
]


def test_addons_filters_platform_releases() -> None:
    helm = FakeHelmRunner(RELEASES)
    client = make_client(helm=helm)
    r = client.get(f"{PREFIX}/addons")
    assert r.status_code == 200, f"expected 200, got {r.status_code} body={r.text}"
    body = r.json()
    assert [a["name"] for a in body] == ["postgres", "redis"], f"unexpected add-ons {body}"
    redis = body[1]
    assert redis["chart_name"] == "redis"
    assert redis["chart_version"] == "17.3.14"
    assert redis["revision"] == 2

    args = helm.calls[0]
    assert "--all-namespaces" in args
    assert args[args.index("--kube-context") + 1] == "kind-cluster"
    assert args[args.index("--max") + 1] == "50"


def test_addons_namespace_and_search() -> None:
    helm = FakeHelmRunner(RELEASES)
    client = make_client(helm=helm)
    r = client.get(f"{PREFIX}/addons?namespace=data&search=POST&limit=5")
    assert r.status_code == 200, f"expected 200, got {r.status_code}"
    assert [a["name"] for a in r.json()] == ["postgres"]
    args = helm.calls[0]
    assert args[args.index("-n") + 1] == "data"
    assert "--all-namespaces" not in args
    assert args[args.index("--max") + 1] == "5"


def test_addons_helm_failure_is_500() -> None:
    client = make_client(helm=FakeHelmRunner(error="helm not found"))
    r = client.get(f"{PREFIX}/addons")
    assert r.status_code == 500, f"expected 500, got {r.status_code}"
    assert r.json() == {"error": "error listing add-ons: helm not found"}


def test_addons_limit_is_bounded() -> None:
    client = make_client()
    r = client.get(f"{PREFIX}/addons?limit=0")
    assert r.status_code == 400, f"expected 400, got {r.status_code}"
