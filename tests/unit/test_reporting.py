import csv
import json

from seqnet import data as datasets
from seqnet.core.stages import FullyConnected, InputStage
from seqnet.reporting import CsvSink, EpochReporter, JsonlSink, PlotAdapter
from seqnet.training.config import TrainConfig
from seqnet.training.network import Network
from seqnet.training.optimizers import Adam


def _network():
    net = Network(loss="cross_entropy_multiclass", optimizer=Adam(alpha=0.01), config=TrainConfig(seed=0))
    net << InputStage(2) << FullyConnected(2, 4, "tanh") << FullyConnected(4, 3, "softmax")
    return net


def test_epoch_reporter_feeds_sinks(tmp_path):
    dataset = datasets.make_blobs(n_per_class=10, seed=1)
    net = _network()
    jsonl = JsonlSink(tmp_path / "metrics.jsonl", seed=7)
    csv_sink = CsvSink(tmp_path / "metrics.csv")
    captured = []
    reporter = EpochReporter(
        net, dataset.inputs, dataset.targets, [jsonl, csv_sink, lambda e, m: captured.append(e)]
    )

    assert net.fit(dataset.inputs, dataset.targets, batch_size=5, epochs=3, on_epoch=reporter)

    assert reporter.epoch == 3
    assert captured == [1, 2, 3]
    records = [json.loads(line) for line in (tmp_path / "metrics.jsonl").read_text().splitlines()]
    assert [r["epoch"] for r in records] == [1, 2, 3]
    assert all(r["split"] == "train" and r["seed"] == 7 for r in records)
    assert all("loss" in r and "accuracy" in r for r in records)

    with (tmp_path / "metrics.csv").open() as handle:
        rows = list(csv.DictReader(handle))
    assert len(rows) == 3
    assert set(rows[0]) == {"accuracy", "epoch", "loss", "split"}


def test_regression_reporter_skips_accuracy():
    dataset = datasets.make_sine(n_points=16)
    net = Network(loss="mse", config=TrainConfig(seed=0))
    net << InputStage(1) << FullyConnected(1, 4, "tanh") << FullyConnected(4, 1, "identity")
    reporter = EpochReporter(net, dataset.inputs, dataset.targets)
    reporter()
    assert list(reporter.history[0]) == ["loss"]


def test_sinks_truncate_previous_runs(tmp_path):
    path = tmp_path / "metrics.jsonl"
    path.write_text('{"epoch": 99}\n')
    JsonlSink(path)
    assert path.read_text() == ""


def test_plot_adapter_headless(tmp_path):
    adapter = PlotAdapter(tmp_path, enable_plots=True)
    adapter.on_epoch(1, {"loss": 1.0})
    adapter.on_epoch(2, {"loss": 0.5})
    plot_path = adapter.close()
    assert plot_path is not None
    assert plot_path.exists()
    assert adapter.history == [(1, 1.0), (2, 0.5)]


def test_plot_adapter_disabled_writes_nothing(tmp_path):
    adapter = PlotAdapter(tmp_path / "run")
    adapter.on_epoch(1, {"loss": 1.0})
    assert adapter.close() is None
    assert not (tmp_path / "run").exists()
