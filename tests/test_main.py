"""Integration tests for the run_search entry point."""
import argparse
import glob
import os

import pytest
import numpy as np
import pandas as pd

from main import build_config, main, run_search
from scr_dic.config import DICSearchConfig, GridConfig, SamplerConfig
from scr_dic.data import simulate_example
from scr_dic.selection import SkipPolicy

pytestmark = pytest.mark.integration


def _config():
    return DICSearchConfig(
        sampler=SamplerConfig(n_iter=4, seed=2),
        grid=GridConfig(tau_step=0.2),
    )


class TestRunSearch:
    """End-to-end runs through run_search."""

    def test_simulated_run_writes_artifacts(self, tmp_path):
        assert run_search(simulate=60, config=_config(), output_base=str(tmp_path)) == 0

        artifacts = tmp_path / "sample" / "artifacts"
        csvs = glob.glob(str(artifacts / "sample_dic_grid_*.csv"))
        assert len(csvs) == 1
        df = pd.read_csv(csvs[0])
        assert len(df) == 5 ** 3
        assert glob.glob(str(artifacts / "*_config.json"))
        assert os.path.exists(tmp_path / "sample" / "inputs" / "simulated_model_inputs.json")

    def test_rerun_from_written_inputs(self, tmp_path):
        run_search(simulate=60, config=_config(), output_base=str(tmp_path))
        inputs = tmp_path / "sample" / "inputs"

        config = _config()
        config.grid.inc = 2
        code = run_search(
            subjects_file=str(inputs / "simulated_subjects.csv"),
            model_inputs_file=str(inputs / "simulated_model_inputs.json"),
            config=config,
            output_base=str(tmp_path / "rerun"),
        )
        assert code == 0

    def test_missing_inputs(self, tmp_path):
        assert run_search(config=_config(), output_base=str(tmp_path)) == 1
        assert run_search(
            subjects_file=str(tmp_path / "nope.csv"),
            model_inputs_file=str(tmp_path / "nope.json"),
            config=_config(),
            output_base=str(tmp_path),
        ) == 1

    def test_invalid_inputs_return_error_code(self, tmp_path):
        run_search(simulate=60, config=_config(), output_base=str(tmp_path))
        inputs = tmp_path / "sample" / "inputs"

        # inc=0 does not match five probabilities for seven covariates
        code = run_search(
            subjects_file=str(inputs / "simulated_subjects.csv"),
            model_inputs_file=str(inputs / "simulated_model_inputs.json"),
            config=_config(),
            output_base=str(tmp_path / "bad"),
        )
        assert code == 1

    def test_seed_zero_is_kept_for_simulation(self, tmp_path):
        config = DICSearchConfig(
            sampler=SamplerConfig(n_iter=4, seed=0),
            grid=GridConfig(tau_step=0.2),
        )
        assert run_search(simulate=30, config=config, output_base=str(tmp_path)) == 0

        written = pd.read_csv(tmp_path / "sample" / "inputs" / "simulated_subjects.csv")
        np.testing.assert_allclose(written["y1"], simulate_example(n=30, seed=0)[0].y1)

    def test_simulate_overrides_inc_with_warning(self, tmp_path, caplog):
        config = DICSearchConfig(
            sampler=SamplerConfig(n_iter=4, seed=2),
            grid=GridConfig(tau_step=0.2, inc=3),
        )
        with caplog.at_level("WARNING", logger="scr_dic.main"):
            assert run_search(simulate=60, config=config, output_base=str(tmp_path)) == 0

        assert "inc=3 replaced by inc=2" in caplog.text
        assert config.grid.inc == 3


def _namespace(**overrides):
    args = dict(
        config=None, run_type="sample", n_iter=None, c=None, seed=None, inc=None,
        skip_policy=None, execution_mode=None, n_jobs=-1, verbose=0, track=False,
    )
    args.update(overrides)
    return argparse.Namespace(**args)


class TestCommandLine:
    """Tests for build_config and main argument handling."""

    def test_overrides_applied(self):
        config = build_config(_namespace(n_iter=6, seed=0, inc=2, skip_policy="exact", track=True))
        assert config.sampler.n_iter == 6
        assert config.sampler.seed == 0
        assert config.grid.inc == 2
        assert config.grid.skip_policy is SkipPolicy.EXACT
        assert config.tracking

    def test_overrides_from_config_file(self, tmp_path):
        path = tmp_path / "search.json"
        DICSearchConfig(sampler=SamplerConfig(n_iter=50, c=2.5)).save(str(path))
        config = build_config(_namespace(config=str(path), run_type="experiment", c=1.0))
        assert config.sampler.n_iter == 50
        assert config.sampler.c == 1.0
        assert config.run_type == "experiment"

    @pytest.mark.parametrize("overrides", [{"n_iter": 1}, {"c": 0.0}, {"inc": -1}])
    def test_invalid_override_raises(self, overrides):
        with pytest.raises(ValueError):
            build_config(_namespace(**overrides))

    def test_invalid_n_iter_returns_error_code(self):
        assert main(["--simulate", "20", "--n-iter", "1"]) == 1

    def test_simulate_with_inc_rejected(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--simulate", "20", "--inc", "3"])
        assert excinfo.value.code == 2
        assert "--inc cannot be combined with --simulate" in capsys.readouterr().err
