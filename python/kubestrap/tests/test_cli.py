"""Tests for the kubestrap command line."""

import json
import sys

import pytest

from kubestrap.cli import bootstrap as cli


def test_plan_prints_settings(monkeypatch, capsys, tmp_path):
    cfg = tmp_path / "cluster.yaml"
    cfg.write_text("gcp_project: demo\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["kubestrap", "plan", "--config", str(cfg)])

    cli.main()

    printed = json.loads(capsys.readouterr().out)
    assert printed["gcp_project"] == "demo"
    assert [n["name"] for n in printed["nodes"]] == ["k8s-master-1", "k8s-worker-1"]


def test_plan_rejects_bad_config(monkeypatch, capsys, tmp_path):
    cfg = tmp_path / "cluster.yaml"
    cfg.write_text("nodes: [{name: w, role: worker}]\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["kubestrap", "plan", "--config", str(cfg)])

    with pytest.raises(SystemExit) as excinfo:
        cli.main()

    assert excinfo.value.code == 1
    assert "control-plane" in capsys.readouterr().err
