"""
Runner for the denoising algorithm.

lambda values:

The algorithm runs on the given input once per lambda value. Choose a start
and end point and how many steps there should be in between; the values are
spread geometrically.

Stopping conditions:

The algorithm runs for at most `max_iter` iterations per lambda value, but
stops earlier if the relative difference between the current candidate output
and the previous iteration's candidate output becomes smaller than
`convergence_threshold`.
"""

import argparse
import os
import pickle

import yaml
from rich import print
from rich.markup import escape
from skimage.metrics import peak_signal_noise_ratio as psnr

from image_recovery.dataset import load_image, output_file_name, save_image
from image_recovery.sweep import SweepConfig, run_sweep
from image_recovery.utils import total_variation

SWEEP_KEYS = ("max_iter", "convergence_threshold", "start_lambda", "end_lambda", "steps")


def load_config(config_path):
    """Loads run configuration from a YAML file."""
    with open(config_path, "r") as file:
        return yaml.safe_load(file) or {}


def build_parser():
    parser = argparse.ArgumentParser(
        description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--config", type=str, help="YAML file with default values for the options below")
    parser.add_argument("-i", "--input-image", type=str, help="Path of input image")
    parser.add_argument("-o", "--output-folder", type=str, help="Folder in which output images are saved")
    parser.add_argument("-m", "--max-iter", type=int, help="Maximum number of iterations")
    parser.add_argument("-c", "--convergence-threshold", type=float, help="Convergence threshold")
    parser.add_argument("-s", "--start-lambda", type=float, help="Starting range for lambda values")
    parser.add_argument("-e", "--end-lambda", type=float, help="End range for lambda values")
    parser.add_argument("-t", "--steps", type=int, help="Number of steps between the lambda values")
    parser.add_argument("--workers", type=int, help="Number of parallel workers (default: number of CPUs)")
    parser.add_argument("--reference", type=str, help="Clean reference image used to report PSNR")
    parser.add_argument("--noise-sigma", type=float, help="Add gaussian noise of this std to the input first")
    parser.add_argument("--seed", type=int, help="Random seed for --noise-sigma")
    parser.add_argument("--result-file", type=str, help="Pickle a summary of the run to this path")
    parser.add_argument("-v", "--verbose", action="store_true", default=None)
    return parser


def resolve_options(parser, argv=None):
    """Parses flags; values found in --config are used where a flag is not given."""
    args = parser.parse_args(argv)
    options = {}
    if args.config is not None:
        if not os.path.exists(args.config):
            raise FileNotFoundError(f"File {args.config} not found.")
        options.update(load_config(args.config))
    options.update({key: value for key, value in vars(args).items() if value is not None})

    missing = [key for key in ("input_image", "output_folder") + SWEEP_KEYS if key not in options]
    if missing:
        parser.error(f"missing required options: {', '.join(missing)}")
    if not os.path.isfile(options["input_image"]):
        parser.error("`input_image` must be a valid file")
    if not os.path.isdir(options["output_folder"]):
        parser.error("`output_folder` must be a valid directory")
    if options.get("reference") is not None and not os.path.isfile(options["reference"]):
        parser.error("`reference` must be a valid file")

    try:
        options["sweep"] = SweepConfig.from_dict(options).validate()
    except ValueError as e:
        parser.error(str(e))
    return options


def make_progress_printer(verbose=False):
    def progress(event, payload):
        if event == "dispatch":
            if verbose:
                print(f"Dispatching lambda = {payload['lambda']:.10f} ({payload['workers']} workers)")
        elif event == "complete":
            status = "[green]converged[/green]" if payload["converged"] else "[yellow]exhausted[/yellow]"
            print(
                f"Finished lambda = {payload['lambda']:.10f}: {status} after {payload['iterations']} iterations"
            )
        elif event == "failed":
            print(f"[red]Failed lambda = {payload['lambda']:.10f}: {escape(payload['error'])}[/red]")

    return progress


def main(argv=None):
    parser = build_parser()
    options = resolve_options(parser, argv)
    sweep = options["sweep"]
    verbose = bool(options.get("verbose", False))

    noise_sigma = options.get("noise_sigma")
    image = load_image(
        options["input_image"],
        add_noise=noise_sigma is not None,
        noise_sigma=noise_sigma if noise_sigma is not None else 0.0,
        random_state=options.get("seed"),
    )
    reference = load_image(options["reference"]) if options.get("reference") else image
    if reference.shape != image.shape:
        parser.error("`reference` must have the same dimensions as `input_image`")
    print(f"Loaded {escape(options['input_image'])} with shape {image.shape}")

    result = run_sweep(
        image,
        sweep.start_lambda,
        sweep.end_lambda,
        sweep.steps,
        sweep.max_iter,
        sweep.convergence_threshold,
        max_workers=options.get("workers"),
        progress_callback=make_progress_printer(verbose),
    )

    summary = []
    for entry in result.entries:
        row = {"lambda": entry.lambda_, "ok": entry.ok}
        if entry.ok:
            output_path = os.path.join(
                options["output_folder"], output_file_name(options["input_image"], entry.lambda_)
            )
            save_image(entry.matrices, output_path)
            denoised = entry.matrices.to_array()
            row.update(
                {
                    "output": output_path,
                    "iterations": entry.result.iterations,
                    "converged": entry.result.converged,
                    "total_variation": sum(total_variation(c) for c in entry.matrices.channels()),
                    "psnr": float(psnr(reference.to_array(), denoised, data_range=255)),
                }
            )
            print(
                f"lambda = {entry.lambda_:.10f}\tTV = {row['total_variation']:.4e}\t"
                f"PSNR = {row['psnr']:.4f}\t-> {escape(output_path)}"
            )
        else:
            row["error"] = str(entry.error)
        summary.append(row)

    result_file = options.get("result_file")
    if result_file:
        if os.path.dirname(result_file):
            os.makedirs(os.path.dirname(result_file), exist_ok=True)
        with open(result_file, "wb") as f:
            pickle.dump({"config": sweep, "input_image": options["input_image"], "results": summary}, f)
        print(f"Results saved to {escape(result_file)}")

    if result.failures():
        print(f"[red]{len(result.failures())} of {len(result)} lambda values failed[/red]")
        return 1
    return 0


def run():
    raise SystemExit(main())


if __name__ == "__main__":
    run()
