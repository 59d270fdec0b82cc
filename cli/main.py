"""Command line entry point training seqnet presets on synthetic data."""

from __future__ import annotations

import argparse
import json
import logging
from copy import deepcopy
from pathlib import Path
from typing import Dict, Iterable, Mapping

from seqnet import data as datasets
from seqnet.core.errors import NetworkError
from seqnet.core.stages import FullyConnected, InputStage
from seqnet.reporting import CsvSink, EpochReporter, JsonlSink, PlotAdapter
from seqnet.training.config import TrainConfig, read_config_file
from seqnet.training.network import Network
from seqnet.training.optimizers import build_optimizer

logger = logging.getLogger("seqnet.cli")

_PRESETS: Dict[str, Mapping[str, object]] = {
    "xor": {
        "data": {"name": "xor", "options": {"n_repeats": 64, "seed": 0}},
        "model": {
            "d_in": 2,
            "d_out": 1,
            "hidden": [4],
            "activation": "tanh",
            "output_activation": "sigmoid",
            "loss": "cross_entropy",
        },
        "optimizer": {"name": "adam", "options": {"alpha": 0.01}},
        "train": {"batch_size": 4, "epochs": 40, "thread_count": 2, "seed": 1},
    },
    "blobs": {
        "data": {"name": "blobs", "options": {"n_per_class": 40, "n_classes": 3, "seed": 0}},
        "model": {
            "d_in": 2,
            "d_out": 3,
            "hidden": [8],
            "activation": "tanh",
            "output_activation": "softmax",
            "loss": "cross_entropy_multiclass",
        },
        "optimizer": {"name": "adam", "options": {"alpha": 0.01}},
        "train": {"batch_size": 8, "epochs": 20, "thread_count": 4, "seed": 2},
    },
    "sine": {
        "data": {"name": "sine", "options": {"n_points": 64, "freq": 1, "seed": 0}},
        "model": {
            "d_in": 1,
            "d_out": 1,
            "hidden": [16],
            "activation": "tanh",
            "output_activation": "identity",
            "loss": "mse",
        },
        "optimizer": {"name": "momentum", "options": {"alpha": 0.02, "mu": 0.9}},
        "train": {"batch_size": 8, "epochs": 60, "thread_count": 2, "seed": 3},
    },
}


def presets() -> Mapping[str, Mapping[str, object]]:
    return {name: deepcopy(cfg) for name, cfg in _PRESETS.items()}


def load_preset(name: str) -> Dict[str, object]:
    try:
        return deepcopy(dict(_PRESETS[name]))
    except KeyError as exc:
        raise KeyError(f"Unknown preset: {name}") from exc


def build_network(config: Mapping[str, object]) -> Network:
    """Assemble ``input -> hidden... -> output`` from the ``model`` section."""

    model_cfg = dict(config["model"])  # type: ignore[arg-type]
    optimizer_cfg = dict(config.get("optimizer", {"name": "sgd"}))  # type: ignore[arg-type]
    train_config = TrainConfig.from_mapping(dict(config.get("train", {})))  # type: ignore[arg-type]

    optimizer = build_optimizer(
        str(optimizer_cfg.get("name", "sgd")), **dict(optimizer_cfg.get("options", {}))
    )
    net = Network(
        loss=str(model_cfg.get("loss", "mse")),
        optimizer=optimizer,
        name=str(config.get("name", "")),
        config=train_config,
    )
    dims = [int(model_cfg["d_in"])]
    dims.extend(int(h) for h in model_cfg.get("hidden", []))
    dims.append(int(model_cfg["d_out"]))
    hidden_activation = str(model_cfg.get("activation", "tanh"))
    output_activation = str(model_cfg.get("output_activation", hidden_activation))

    net.add(InputStage(dims[0]))
    for idx, (in_dim, out_dim) in enumerate(zip(dims[:-1], dims[1:])):
        last = idx == len(dims) - 2
        net.add(FullyConnected(in_dim, out_dim, output_activation if last else hidden_activation))
    return net


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--preset",
        choices=sorted(_PRESETS),
        default="xor",
        help="Preset configuration to execute",
    )
    parser.add_argument("--config", type=Path, help="Optional JSON/YAML config override")
    parser.add_argument("--epochs", type=int, help="Override the number of epochs")
    parser.add_argument("--batch-size", type=int, help="Override the mini-batch size")
    parser.add_argument("--threads", type=int, help="Override the worker slot count")
    parser.add_argument("--seed", type=int, help="Seed used for weight initialisation")
    parser.add_argument(
        "--gradient-check",
        action="store_true",
        help="Verify back-propagated gradients before training",
    )
    parser.add_argument("--save-weights", type=Path, help="Write trained weights to this file")
    parser.add_argument("--run-dir", type=Path, help="Directory for metric files and plots")
    parser.add_argument(
        "--enable-plots", action="store_true", help="Write loss.png into --run-dir"
    )
    parser.add_argument(
        "--list-presets", action="store_true", help="List available presets and exit"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def _merge(base: dict, override: Mapping[str, object]) -> dict:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            base[key] = _merge(dict(base[key]), value)
        else:
            base[key] = value
    return base


def _resolve_config(args: argparse.Namespace) -> dict:
    config = load_preset(args.preset)
    if args.config:
        config = _merge(config, read_config_file(args.config))
    train_cfg = config.setdefault("train", {})
    overrides = {
        "epochs": args.epochs,
        "batch_size": args.batch_size,
        "thread_count": args.threads,
        "seed": args.seed,
    }
    train_cfg.update({k: v for k, v in overrides.items() if v is not None})
    config.setdefault("name", args.preset)
    return config


def run(config: Mapping[str, object], args: argparse.Namespace) -> Dict[str, object]:
    data_cfg = dict(config["data"])  # type: ignore[arg-type]
    dataset = datasets.get(str(data_cfg["name"]), **dict(data_cfg.get("options", {})))
    net = build_network(config)

    payload: Dict[str, object] = {"preset": config.get("name"), "samples": len(dataset)}
    if args.gradient_check:
        sample = min(len(dataset), 8)
        payload["gradient_check"] = net.gradient_check(
            dataset.inputs[:sample], dataset.targets[:sample]
        )

    sinks: list = []
    plots = None
    if args.run_dir is not None:
        seed = int(net.config.seed)
        sinks.append(JsonlSink(args.run_dir / "metrics.jsonl", seed=seed))
        sinks.append(CsvSink(args.run_dir / "metrics.csv"))
        plots = PlotAdapter(args.run_dir, enable_plots=args.enable_plots)
        sinks.append(plots)
    reporter = EpochReporter(net, dataset.inputs, dataset.targets, sinks)

    converged = net.fit(dataset.inputs, dataset.targets, on_epoch=reporter)
    payload["converged"] = converged
    payload["epochs"] = reporter.epoch
    payload["loss"] = net.get_loss(dataset.inputs, dataset.targets)
    if dataset.task_type == "multiclass":
        payload["accuracy"] = net.test(dataset.inputs, dataset.targets).accuracy()
    if plots is not None:
        plot_path = plots.close()
        if plot_path is not None:
            payload["plot"] = str(plot_path)
    if args.save_weights is not None:
        net.save_weights(args.save_weights)
        payload["weights"] = str(args.save_weights)
    return payload


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.list_presets:
        for name in sorted(_PRESETS):
            print(name)
        raise SystemExit(0)

    config = _resolve_config(args)
    try:
        payload = run(config, args)
    except NetworkError as exc:
        logger.error("%s", exc)
        raise SystemExit(2) from exc
    print(json.dumps(payload, sort_keys=True))
    if not payload["converged"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
