from __future__ import annotations

import base64

import yaml
from nacl import encoding, public

from control_plane.github_actions import (
    branch_name,
    render_workflow,
    seal_secret,
    secret_name,
    workflow_filename,
    workflow_path,
)


def _load(text: str) -> dict:
    wf = yaml.safe_load(text)
    assert "on" in wf, "the trigger key must load back as the string 'on'"
    return wf


def test_push_workflow() -> None:
    wf = _load(render_workflow(3, 4, "shop", "main", server_url="https://dashboard.example.com"))
    assert wf["name"] == "Deploy to Porter"
    assert wf["on"] == {"push": {"branches": ["main"]}}
    steps = wf["jobs"]["porter-deploy"]["steps"]
    assert [s["name"] for s in steps] == ["Checkout code", "Set Github tag", "Setup porter", "Deploy stack"]
    assert steps[0]["uses"] == "actions/checkout@v3"
    assert steps[1]["id"] == "vars"

    deploy = steps[-1]
    assert deploy["run"] == "exec porter apply"
    assert deploy["timeout-minutes"] == 30
    assert deploy["env"] == {
        "PORTER_CLUSTER": "4",
        "PORTER_HOST": "https://dashboard.example.com",
        "PORTER_PROJECT": "3",
        "PORTER_STACK_NAME": "shop",
        "PORTER_TAG": "${{ steps.vars.outputs.sha_short }}",
        "PORTER_TOKEN": "${{ secrets.PORTER_STACK_3_4 }}",
    }


def test_preview_workflow() -> None:
    wf = _load(render_workflow(3, 4, "shop", "main", porter_yaml_path="deploy/porter.yaml", preview=True))
    assert wf["name"] == "Deploy to Preview Environment"
    assert wf["on"]["pull_request"]["types"] == ["opened", "synchronize"]
    deploy = wf["jobs"]["porter-deploy"]["steps"][-1]
    assert deploy["run"] == "exec porter apply -f deploy/porter.yaml --preview"
    assert deploy["env"]["PORTER_PR_NUMBER"] == "${{ github.event.number }}"
    assert deploy["env"]["PORTER_REPO_NAME"] == "${{ github.event.repository.name }}"


def test_names() -> None:
    assert secret_name(3, 4) == "PORTER_STACK_3_4"
    assert workflow_filename("shop") == "porter_stack_shop.yml"
    assert workflow_path("shop") == ".github/workflows/porter_stack_shop.yml"
    assert workflow_path("shop", preview=True) == ".github/workflows/porter_preview_shop.yml"
    assert branch_name("shop") == "porter-stack-shop"


def test_seal_secret_decrypts_with_private_key() -> None:
    key = public.PrivateKey.generate()
    pub = key.public_key.encode(encoding.Base64Encoder()).decode("ascii")
    sealed = seal_secret(pub, "s3cret")
    assert public.SealedBox(key).decrypt(base64.b64decode(sealed)) == b"s3cret"
