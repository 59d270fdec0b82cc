import json
from pathlib import Path

import pytest

from cli.main import build_network, load_preset, main


def _payload(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_cli_blobs_preset_writes_metrics(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    main(["--preset", "blobs", "--epochs", "3", "--run-dir", "run", "--gradient-check"])
    payload = _payload(capsys)
    assert payload["preset"] == "blobs"
    assert payload["converged"] is True
    assert payload["gradient_check"] is True
    assert payload["epochs"] == 3
    assert 0.0 <= payload["accuracy"] <= 100.0

    lines = Path("run/metrics.jsonl").read_text().splitlines()
    assert len(lines) == 3
    assert Path("run/metrics.csv").exists()


def test_cli_xor_saves_weights_and_plot(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    main(
        [
            "--preset",
            "xor",
            "--epochs",
            "2",
            "--threads",
            "1",
            "--run-dir",
            "run",
            "--enable-plots",
            "--save-weights",
            "out/weights.txt",
        ]
    )
    payload = _payload(capsys)
    assert "accuracy" not in payload
    assert Path(payload["plot"]).exists()

    net = build_network(load_preset("xor"))
    net.load_weights(payload["weights"])
    assert net.forward([1.0, 0.0]).shape == (1,)


def test_cli_config_file_overrides_preset(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    config = tmp_path / "override.yaml"
    config.write_text("train:\n  epochs: 1\n  batch_size: 16\n")
    main(["--preset", "sine", "--config", str(config), "--run-dir", "run"])
    payload = _payload(capsys)
    assert payload["epochs"] == 1
    assert payload["samples"] == 64


def test_cli_rejects_invalid_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = tmp_path / "bad.yaml"
    config.write_text("train:\n  bogus: 1\n")
    with pytest.raises(SystemExit) as excinfo:
        main(["--preset", "xor", "--config", str(config)])
    assert excinfo.value.code == 2


def test_cli_lists_presets(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["--list-presets"])
    assert excinfo.value.code == 0
    assert capsys.readouterr().out.split() == ["blobs", "sine", "xor"]
