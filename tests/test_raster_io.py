"""
Tests for tile producers and the checkpoint store
"""

import pytest
import numpy as np
import cv2

from stereo_corr.data_models import BBox, DisparityField, HomographyGrid, NODATA_VALUE, SeedSpread
from stereo_corr.errors import CheckpointReadError, MissingInputError
from stereo_corr.utils.raster_io import (ArrayProducer, CheckpointStore, CropProducer, HomographyProducer,
                                         MaskedProducer, apply_homography, tile_grid)


@pytest.fixture
def ramp():
    """Fixture providing a 20x30 ramp where every value is unique."""
    return np.arange(600, dtype=np.float32).reshape(20, 30)


class TestProducers:
    """Test suite for lazy tile producers."""

    def test_array_producer_fills_outside(self, ramp):
        producer = ArrayProducer(ramp, fill_value=-1)
        tile = producer.read(BBox(-2, -1, 3, 2))
        assert tile.shape == (3, 5)
        assert np.all(tile[0] == -1)
        assert np.all(tile[:, :2] == -1)
        assert np.array_equal(tile[1:, 2:], ramp[:2, :3])

    def test_crop_producer(self, ramp):
        producer = CropProducer(ArrayProducer(ramp), BBox(10, 5, 20, 15))
        assert producer.shape == (10, 10)
        assert np.array_equal(producer.read(BBox(0, 0, 10, 10)), ramp[5:15, 10:20])
        # reading past the window does not leak source pixels
        tile = producer.read(BBox(8, 0, 12, 2))
        assert np.array_equal(tile[:, :2], ramp[5:7, 18:20])
        assert np.all(tile[:, 2:] == 0)

    def test_crop_producer_empty_read(self, ramp):
        producer = CropProducer(ArrayProducer(ramp), BBox(0, 0, 5, 5))
        assert np.all(producer.read(BBox(10, 10, 12, 12)) == 0)

    def test_masked_producer(self, ramp):
        mask = np.ones(ramp.shape, dtype=np.uint8)
        mask[3, 4] = 0
        producer = MaskedProducer(ArrayProducer(ramp), ArrayProducer(mask))
        tile = producer.read(BBox(0, 0, 10, 10))
        assert tile[3, 4] == 0
        assert tile[3, 5] == ramp[3, 5]
        # the source is not modified
        assert ramp[3, 4] != 0

    def test_masked_producer_shape_mismatch(self, ramp):
        with pytest.raises(ValueError):
            MaskedProducer(ArrayProducer(ramp), ArrayProducer(np.ones((5, 5))))

    def test_homography_translation(self, ramp):
        shift = np.array([[1, 0, 3], [0, 1, 0], [0, 0, 1]], dtype=float)
        producer = HomographyProducer(ArrayProducer(ramp), shift, cv2.INTER_NEAREST)
        tile = producer.read(BBox(0, 0, 30, 20))
        # out(H p) == source(p)
        assert np.array_equal(tile[:, 3:], ramp[:, :-3])
        assert np.all(tile[:, :3] == 0)

    def test_apply_homography_degenerate(self):
        projective = np.array([[1, 0, 0], [0, 1, 0], [1, 0, 0]], dtype=float)
        tx, ty = apply_homography(projective, np.array([0.0, 2.0]), np.array([1.0, 1.0]))
        assert not np.isfinite(tx[0])
        assert tx[1] == pytest.approx(1.0)

    def test_tile_grid(self):
        tiles = tile_grid((50, 70), 32)
        assert tiles == [BBox(0, 0, 32, 32), BBox(32, 0, 64, 32), BBox(64, 0, 70, 32),
                         BBox(0, 32, 32, 50), BBox(32, 32, 64, 50), BBox(64, 32, 70, 50)]


class TestCheckpointStore:
    """Test suite for persisted run products."""

    @pytest.fixture
    def store(self, tmp_path):
        return CheckpointStore(str(tmp_path / "run"))

    def test_artifact_names(self, store):
        assert store.seed_disparity.name == "run-D_sub.npy"
        assert store.seed_spread.name == "run-D_sub_spread.npy"
        assert store.local_homography.name == "run-local_hom.txt"
        assert store.disparity.name == "run-D.npy"

    def test_disparity_round_trip(self, store):
        field = DisparityField.invalid(6, 8, (0.5, 0.5))
        field.valid[2:4, 3:6] = True
        field.disparity[2:4, 3:6] = (4, -1)
        store.write_disparity(store.seed_disparity, field)

        raw = np.load(str(store.seed_disparity))
        assert raw.dtype == np.int32
        assert np.all(raw[0, 0] == NODATA_VALUE)

        loaded = store.read_disparity(store.seed_disparity, (0.5, 0.5))
        assert np.array_equal(loaded.valid, field.valid)
        assert np.array_equal(loaded.disparity, field.disparity)
        assert loaded.scale == (0.5, 0.5)

    def test_missing_disparity(self, store):
        with pytest.raises(CheckpointReadError):
            store.read_disparity(store.seed_disparity)

    def test_corrupt_disparity(self, store):
        np.save(str(store.seed_disparity), np.zeros((4, 4), dtype=np.int32))
        with pytest.raises(CheckpointReadError):
            store.read_disparity(store.seed_disparity)

    def test_spread_round_trip(self, store):
        radius = np.zeros((3, 4, 2), dtype=np.float32)
        radius[1, 1] = (2.5, 1.0)
        store.write_spread(SeedSpread(radius))
        assert store.read_spread().max_radius() == (2.5, 1.0)

    def test_homography_round_trip(self, store):
        grid = HomographyGrid.identity(2, 3, 64)
        grid.matrices[1, 2] = [[1.0, 0.01, -3.25], [0.0, 1.0, 2.0], [1e-5, 0.0, 1.0]]
        store.write_homographies(grid)

        loaded = store.read_homographies()
        assert loaded.grid_shape == (2, 3)
        assert loaded.tile_size == 64
        assert np.array_equal(loaded.matrices, grid.matrices)

    def test_truncated_homography_file(self, store):
        store.write_homographies(HomographyGrid.identity(2, 2, 16))
        lines = store.local_homography.read_text().splitlines()
        store.local_homography.write_text("\n".join(lines[:-1]) + "\n")
        with pytest.raises(CheckpointReadError):
            store.read_homographies()

    def test_matches_and_alignment(self, store):
        store.match_file.write_text("1 2 3 4\n5 6 7 8\n")
        left, right = store.read_matches()
        assert np.array_equal(left, [[1, 2], [5, 6]])
        assert np.array_equal(right, [[3, 4], [7, 8]])

        assert np.array_equal(store.read_alignment(store.align_left), np.eye(3))
        store.align_right.write_text("1 0 2\n0 1 0\n0 0 1\n")
        assert store.read_alignment(store.align_right)[0, 2] == 2

    def test_missing_inputs(self, store):
        with pytest.raises(MissingInputError, match="(?i)missing mandatory input"):
            store.full_res_sources()

    def test_ensure_low_res_inputs(self, workspace):
        image = np.random.default_rng(2).random((100, 200)).astype(np.float32)
        mask = np.ones((100, 200), dtype=np.uint8)
        mask[10, 20] = 0
        store = CheckpointStore(workspace(image, image, mask))

        scale = store.ensure_low_res_inputs(5000)
        assert scale == (0.5, 0.5)

        left_sub, right_sub, lmask_sub, rmask_sub = store.low_res_arrays()
        assert left_sub.shape == (50, 100)
        assert lmask_sub[5, 10] == 0
        assert lmask_sub[5, 11] == 1
        assert rmask_sub.all()

        # existing sub images are kept
        mtime = store.left_sub.stat().st_mtime_ns
        assert store.ensure_low_res_inputs(100) == (0.5, 0.5)
        assert store.left_sub.stat().st_mtime_ns == mtime

    def test_small_images_are_not_upsampled(self, workspace):
        image = np.zeros((10, 10), dtype=np.float32)
        store = CheckpointStore(workspace(image, image))
        assert store.ensure_low_res_inputs(10000) == (1.0, 1.0)
