"""
Tests for the two-stage correlation pipeline
"""

import pytest
import numpy as np

from conftest import make_shifted_pair
from stereo_corr.data_models import BBox, DisparityField, NODATA_VALUE, SearchRange, SeedSpread
from stereo_corr.errors import MissingInputError
from stereo_corr.pipeline.orchestrator import StereoCorrelationPipeline
from stereo_corr.pipeline.tile_writer import TileWriter
from stereo_corr.utils.config_manager import CorrelationSettings
from stereo_corr.utils.raster_io import CheckpointStore


def fast_settings(**options):
    params = dict(kernel_size=(9, 9), max_pyramid_levels=0, tile_size=128, threads=2,
                  low_res_max_pixels=4096)
    params.update(options)
    return CorrelationSettings(**params)


@pytest.fixture
def seeded_prefix(workspace):
    """Fixture providing a 256x256 pair shifted by (8, 0) with a quarter-resolution seed."""
    left, right = make_shifted_pair(256, 256, 8, 0, seed=11)
    prefix = workspace(left, right)
    store = CheckpointStore(prefix)
    assert store.ensure_low_res_inputs(4096) == (0.25, 0.25)

    disparity = np.zeros((64, 64, 2), dtype=np.int32)
    disparity[...] = (2, 0)
    store.write_disparity(store.seed_disparity, DisparityField(disparity, np.ones((64, 64), dtype=bool)))
    return prefix


class TestTileWriter:
    """Test suite for the output raster sink."""

    def test_tiles_assembled(self, tmp_path):
        path = tmp_path / "out-D.npy"
        field = DisparityField.invalid(2, 3)
        field.valid[0, 0] = True
        field.disparity[0, 0] = (5, -1)

        with TileWriter(path, (4, 3)) as writer:
            writer.write(BBox(0, 0, 3, 2), field)
            writer.write(BBox(0, 2, 3, 4), field)

        raster = np.load(str(path))
        assert raster.shape == (4, 3, 2)
        assert raster[2, 0].tolist() == [5, -1]
        assert np.all(raster[3, 2] == NODATA_VALUE)
        assert not (tmp_path / "out-D.npy.tmp.npy").exists()

    def test_failure_leaves_no_output(self, tmp_path):
        path = tmp_path / "out-D.npy"
        with pytest.raises(ValueError):
            with TileWriter(path, (4, 4)) as writer:
                writer.write(BBox(0, 0, 4, 4), DisparityField.invalid(2, 2))
        assert not path.exists()
        assert not (tmp_path / "out-D.npy.tmp.npy").exists()


class TestStereoCorrelationPipeline:
    """Test suite for end-to-end runs."""

    def test_seed_mode_zero(self, workspace):
        left, right = make_shifted_pair(200, 160, 6, 1, seed=2)
        prefix = workspace(left, right)
        settings = fast_settings(seed_mode=0, search_range=[0, -2, 10, 3], tile_size=64)

        result = StereoCorrelationPipeline(settings, prefix).run()

        assert result.stages_run == ('low_res', 'full_res')
        assert result.tiles_processed == 12
        raster = np.load(result.output_path)
        assert raster.shape == (200, 160, 2)
        assert np.all(raster[20:180, 20:140] == (6, 1))

    def test_low_res_only(self, workspace):
        left, right = make_shifted_pair(256, 256, 8, 0, seed=5)
        prefix = workspace(left, right)
        settings = fast_settings(seed_mode=1, search_range=[0, -4, 16, 4], compute_low_res_only=True)

        result = StereoCorrelationPipeline(settings, prefix).run()

        store = CheckpointStore(prefix)
        assert result.output_path is None
        assert result.stages_run == ('low_res',)
        assert store.seed_disparity.exists()
        assert not store.disparity.exists()

    @pytest.mark.parametrize("seed_mode", [2, 3])
    @pytest.mark.parametrize("low_res_only", [False, True])
    def test_missing_spread(self, seeded_prefix, seed_mode, low_res_only):
        settings = fast_settings(seed_mode=seed_mode, compute_low_res_only=low_res_only)
        with pytest.raises(MissingInputError, match="(?i)missing mandatory input"):
            StereoCorrelationPipeline(settings, seeded_prefix).run()
        assert not CheckpointStore(seeded_prefix).disparity.exists()

    def test_sparse_seed_with_spread(self, seeded_prefix):
        store = CheckpointStore(seeded_prefix)
        store.write_spread(SeedSpread(np.ones((64, 64, 2), dtype=np.float32)))

        result = StereoCorrelationPipeline(fast_settings(seed_mode=3), seeded_prefix).run()

        raster = np.load(result.output_path)
        assert np.all(raster[16:240, 16:232] == (8, 0))

    def test_skip_low_res_reuses_seed(self, seeded_prefix):
        settings = fast_settings(seed_mode=1, skip_low_res=True)
        result = StereoCorrelationPipeline(settings, seeded_prefix).run()

        assert result.stages_run == ('full_res',)
        assert result.low_res is None
        assert result.search_range == SearchRange(8, 0, 8, 0)
        raster = np.load(result.output_path)
        assert np.all(raster[16:240, 16:232] == (8, 0))

    def test_skip_low_res_without_seed(self, workspace):
        left, right = make_shifted_pair(64, 64, 2, 0)
        settings = fast_settings(seed_mode=1, skip_low_res=True)
        with pytest.raises(MissingInputError):
            StereoCorrelationPipeline(settings, workspace(left, right)).run()

    @pytest.mark.slow
    def test_large_pair_end_to_end(self, workspace):
        left, right = make_shifted_pair(2048, 2048, 17, 0, seed=13)
        prefix = workspace(left, right)
        settings = CorrelationSettings(seed_mode=1, search_range=[0, -4, 32, 4], tile_size=512)

        result = StereoCorrelationPipeline(settings, prefix).run()

        assert result.tiles_processed == 16
        raster = np.load(result.output_path)[64:-64, 64:-64]
        valid = ~np.all(raster == NODATA_VALUE, axis=2)
        assert valid.mean() > 0.95
        assert np.mean(np.all(raster[valid] == (17, 0), axis=1)) > 0.95
