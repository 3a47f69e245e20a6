import os
import pickle

import numpy as np
import pytest
import yaml
from PIL import Image

from image_recovery import cli, sweep


@pytest.fixture
def input_image(tmp_path):
    rng = np.random.default_rng(0)
    pixels = rng.integers(0, 256, (6, 6, 3), dtype=np.uint8)
    path = tmp_path / "noisy.png"
    Image.fromarray(pixels).save(path)
    return path


@pytest.fixture
def output_folder(tmp_path):
    folder = tmp_path / "out"
    folder.mkdir()
    return folder


def test_cli_writes_one_image_per_lambda(input_image, output_folder, tmp_path):
    result_file = tmp_path / "results" / "run.pkl"
    status = cli.main(
        [
            "-i", str(input_image),
            "-o", str(output_folder),
            "-m", "20",
            "-c", "1e-6",
            "-s", "0.01",
            "-e", "1.0",
            "-t", "3",
            "--workers", "2",
            "--result-file", str(result_file),
        ]
    )

    assert status == 0
    assert sorted(os.listdir(output_folder)) == [
        "noisy_lambda_=_0.0100000000.png",
        "noisy_lambda_=_0.1000000000.png",
        "noisy_lambda_=_1.0000000000.png",
    ]
    with Image.open(output_folder / "noisy_lambda_=_0.1000000000.png") as image:
        assert image.size == (6, 6)
        assert image.mode == "RGB"

    with open(result_file, "rb") as f:
        summary = pickle.load(f)
    assert [row["ok"] for row in summary["results"]] == [True, True, True]
    assert summary["config"].steps == 3


def test_cli_reads_yaml_config(input_image, output_folder, tmp_path):
    config_path = tmp_path / "run.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "input_image": str(input_image),
                "output_folder": str(output_folder),
                "max_iter": 5,
                "convergence_threshold": 1e-4,
                "start_lambda": 0.05,
                "end_lambda": 2.0,
                "steps": 2,
            }
        )
    )
    # flags override values from the config file
    status = cli.main(["--config", str(config_path), "-t", "1", "--workers", "1"])

    assert status == 0
    assert os.listdir(output_folder) == ["noisy_lambda_=_0.0500000000.png"]


def test_cli_rejects_invalid_lambda_range(input_image, output_folder):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(
            ["-i", str(input_image), "-o", str(output_folder), "-m", "5", "-c", "1e-4",
             "-s", "1.0", "-e", "0.5", "-t", "3"]
        )
    assert excinfo.value.code == 2
    assert os.listdir(output_folder) == []


def test_cli_rejects_missing_input(tmp_path, output_folder):
    with pytest.raises(SystemExit):
        cli.main(
            ["-i", str(tmp_path / "missing.png"), "-o", str(output_folder), "-m", "5",
             "-c", "1e-4", "-s", "0.1", "-e", "0.5", "-t", "3"]
        )


def test_cli_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        cli.main(["--config", str(tmp_path / "nope.yaml")])


def test_cli_reports_failed_lambda(monkeypatch, input_image, output_folder):
    real_solve = sweep.solve_multichannel

    def flaky_solve(image, params):
        if params.lambda_ > 0.5:
            raise FloatingPointError("overflow")
        return real_solve(image, params)

    monkeypatch.setattr(sweep, "solve_multichannel", flaky_solve)
    status = cli.main(
        ["-i", str(input_image), "-o", str(output_folder), "-m", "5", "-c", "1e-4",
         "-s", "0.1", "-e", "1.0", "-t", "2", "--verbose"]
    )

    assert status == 1
    assert os.listdir(output_folder) == ["noisy_lambda_=_0.1000000000.png"]


def test_cli_rejects_reference_with_other_dimensions(input_image, output_folder, tmp_path):
    reference = tmp_path / "clean.png"
    Image.fromarray(np.zeros((5, 7, 3), dtype=np.uint8)).save(reference)
    result_file = tmp_path / "run.pkl"

    with pytest.raises(SystemExit) as excinfo:
        cli.main(
            ["-i", str(input_image), "-o", str(output_folder), "-m", "5", "-c", "1e-4",
             "-s", "0.1", "-e", "1.0", "-t", "2", "--reference", str(reference),
             "--result-file", str(result_file)]
        )

    assert excinfo.value.code == 2
    assert os.listdir(output_folder) == []
    assert not result_file.exists()


def test_cli_reports_psnr_against_reference(input_image, output_folder, tmp_path):
    reference = tmp_path / "clean.png"
    Image.fromarray(np.full((6, 6, 3), 128, dtype=np.uint8)).save(reference)
    result_file = tmp_path / "run.pkl"

    status = cli.main(
        ["-i", str(input_image), "-o", str(output_folder), "-m", "5", "-c", "1e-4",
         "-s", "0.1", "-e", "1.0", "-t", "2", "--reference", str(reference),
         "--result-file", str(result_file)]
    )

    assert status == 0
    with open(result_file, "rb") as f:
        summary = pickle.load(f)
    for row in summary["results"]:
        assert np.isfinite(row["psnr"])


def test_cli_rejects_fractional_steps_in_config(input_image, output_folder, tmp_path):
    config_path = tmp_path / "run.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "input_image": str(input_image),
                "output_folder": str(output_folder),
                "max_iter": 5,
                "convergence_threshold": 1e-4,
                "start_lambda": 0.05,
                "end_lambda": 2.0,
                "steps": 2.5,
            }
        )
    )
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--config", str(config_path)])
    assert excinfo.value.code == 2
    assert os.listdir(output_folder) == []
