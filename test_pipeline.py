"""
Tests for configuration, the mosaic pipeline and the command line
"""

import json
import logging
import math
from pathlib import Path

import numpy as np
import pytest
import tifffile

from conftest import NoMatches, cut_strip, make_scene
from image_mosaic import TqdmProgress, main, parse_arguments
from strip_mosaic.algorithms.feature_matcher import PatchMatcher
from strip_mosaic.core.config import MosaicConfig, fix_tile_multiple
from strip_mosaic.core.errors import AlignmentError, ConfigurationError, MosaicError
from strip_mosaic.core.pipeline import StripMosaicPipeline
from strip_mosaic.models.output_type import OutputType
from strip_mosaic.utils.logging import setup_logging


def write_strip(tmp_path, scene, width, offsets):
    paths = []
    for i, image in enumerate(cut_strip(scene, width, offsets)):
        path = tmp_path / f"strip_{i:02d}.tif"
        tifffile.imwrite(str(path), image)
        paths.append(path)
    return paths


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestMosaicConfig:
    def test_defaults(self):
        config = MosaicConfig(image_files=["a.tif"])

        assert config.image_files == (Path("a.tif"),)
        assert config.orientation == 'horizontal'
        assert config.overlap_width == 2000
        assert config.effective_blend_radius == 2000
        assert config.effective_tile_size == 4000
        assert config.output_type is OutputType.FLOAT32
        assert config.band == 1

    def test_tile_size_rules(self):
        assert MosaicConfig(["a.tif"], overlap_width=20).effective_tile_size == 256
        assert MosaicConfig(["a.tif"], overlap_width=20, tile_size=100).effective_tile_size == 112
        assert MosaicConfig(["a.tif"], blend_radius=70, tile_size=100).effective_tile_size == 144
        assert fix_tile_multiple(16) == 16
        assert fix_tile_multiple(17) == 32

    def test_explicit_blend_radius(self):
        assert MosaicConfig(["a.tif"], overlap_width=500, blend_radius=40).effective_blend_radius == 40

    def test_vertical_orientation_rejected(self):
        with pytest.raises(ConfigurationError, match="orientation"):
            MosaicConfig(["a.tif"], orientation='vertical')

    @pytest.mark.parametrize("kwargs", [
        {"image_files": []},
        {"image_files": ["a.tif"], "output_image": ""},
        {"image_files": ["a.tif"], "output_image": Path("")},
        {"image_files": ["a.tif"], "output_image": "."},
        {"image_files": ["a.tif"], "overlap_width": 0},
        {"image_files": ["a.tif"], "blend_radius": -1},
        {"image_files": ["a.tif"], "band": 0},
        {"image_files": ["a.tif"], "tile_size": 0},
        {"image_files": ["a.tif"], "num_threads": 0},
        {"image_files": ["a.tif"], "ransac_iterations": 0},
        {"image_files": ["a.tif"], "inlier_threshold": 0},
        {"image_files": ["a.tif"], "matcher": "orb"},
        {"image_files": ["a.tif"], "output_type": "Float64"},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigurationError):
            MosaicConfig(**kwargs)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            MosaicConfig([])

    def test_output_type_from_string(self):
        assert MosaicConfig(["a.tif"], output_type="byte").output_type is OutputType.BYTE

    def test_resolve_output_nodata(self):
        assert MosaicConfig(["a.tif"], output_nodata_value=-1).resolve_output_nodata(5.0) == -1.0
        assert MosaicConfig(["a.tif"]).resolve_output_nodata(5.0) == 5.0
        assert math.isnan(MosaicConfig(["a.tif"]).resolve_output_nodata(None))
        assert MosaicConfig(["a.tif"], output_type="UInt16").resolve_output_nodata(None) == 0.0

    def test_from_dict_ignores_unknown_keys(self):
        config = MosaicConfig.from_dict({
            "image_files": ["a.tif", "b.tif"],
            "overlap_width": 300,
            "comment": "ignored"
        })
        assert len(config.image_files) == 2
        assert config.overlap_width == 300

    def test_frozen(self):
        config = MosaicConfig(["a.tif"])
        with pytest.raises(AttributeError):
            config.band = 2

    def test_to_dict_is_json_serialisable(self):
        config = MosaicConfig(["a.tif"], output_image="out.tif", overlap_width=64)
        data = json.loads(json.dumps(config.to_dict()))
        assert data["output_image"] == "out.tif"
        assert data["blend_radius"] == 64


class TestPipeline:
    def test_three_image_strip(self, tmp_path):
        scene = make_scene(280, 100, seed=3)
        paths = write_strip(tmp_path, scene, 100, [0, 90, 180])
        config = MosaicConfig(
            image_files=paths,
            output_image=tmp_path / "mosaic.tif",
            overlap_width=20,
            num_threads=2
        )
        pipeline = StripMosaicPipeline(
            config, matcher=PatchMatcher(patch_size=7, grid_spacing=1, ncc_threshold=0.95)
        )

        output = pipeline.run()

        assert output == tmp_path / "mosaic.tif"
        np.testing.assert_allclose(pipeline.layout[2].transform.translation, [180, 0], atol=1e-3)
        written = tifffile.imread(str(output))
        assert written.shape == (100, 280)
        np.testing.assert_allclose(written, scene, rtol=1e-4)

    def test_output_nodata_follows_inputs(self, tmp_path):
        data = np.full((20, 30), 50, dtype=np.int16)
        data[:, :5] = -1
        path = tmp_path / "single.tif"
        tifffile.imwrite(str(path), data, extratags=[(42113, 's', 0, '-1', True)])
        config = MosaicConfig([path], output_image=tmp_path / "out.tif", overlap_width=8,
                              output_type="Int16")

        output = StripMosaicPipeline(config).run()

        written = tifffile.imread(str(output))
        assert written.dtype == np.int16
        np.testing.assert_array_equal(written[:, :5], -1)
        np.testing.assert_array_equal(written[:, 5:], 50)

    def test_missing_output_name(self, tmp_path):
        loaded = []
        pipeline = StripMosaicPipeline(
            MosaicConfig(["a.tif"]), image_loader=lambda *args, **kwargs: loaded.append(args)
        )
        with pytest.raises(ConfigurationError, match="output"):
            pipeline.run()
        assert loaded == []

    def test_alignment_failure_aborts_before_rendering(self, tmp_path):
        scene = make_scene(190, 100, seed=1)
        paths = write_strip(tmp_path, scene, 100, [0, 90])
        output = tmp_path / "mosaic.tif"
        config = MosaicConfig(paths, output_image=output, overlap_width=20)

        with pytest.raises(AlignmentError):
            StripMosaicPipeline(config, matcher=NoMatches()).run()
        assert not output.exists()

    def test_missing_input(self, tmp_path):
        config = MosaicConfig([tmp_path / "nope.tif"], output_image=tmp_path / "out.tif")
        with pytest.raises(MosaicError):
            StripMosaicPipeline(config).run()


class TestCommandLine:
    def test_parse_arguments(self):
        args = parse_arguments([
            "a.tif", "b.tif", "-o", "out.tif", "--overlap-width", "300",
            "--ot", "UInt16", "--band", "2", "--matcher", "patch"
        ])
        assert args.image_files == [Path("a.tif"), Path("b.tif")]
        assert args.output_image == Path("out.tif")
        assert args.overlap_width == 300
        assert args.output_type == "UInt16"
        assert args.band == 2
        assert args.matcher == "patch"
        assert args.blend_radius == 0

    def test_missing_output_image(self, tmp_path):
        assert main([str(tmp_path / "a.tif")]) == 1

    def test_empty_output_image_name(self, tmp_path, capsys):
        args = [str(tmp_path / "a.tif"), "-o", ""]
        assert parse_arguments(args).output_image == Path(".")

        assert main(args) == 1
        assert "Missing output image name" in capsys.readouterr().out

    def test_unsupported_orientation(self, tmp_path):
        assert main([str(tmp_path / "a.tif"), "-o", str(tmp_path / "o.tif"),
                     "--orientation", "vertical"]) == 1

    def test_no_images(self, tmp_path):
        assert main(["-o", str(tmp_path / "o.tif")]) == 1

    def test_missing_input_file(self, tmp_path):
        assert main([str(tmp_path / "a.tif"), "-o", str(tmp_path / "o.tif")]) == 1

    def test_end_to_end(self, tmp_path):
        scene = make_scene(340, 160, seed=12)
        paths = write_strip(tmp_path, scene, 240, [0, 100])
        output = tmp_path / "result" / "mosaic.tif"
        log_file = tmp_path / "logs" / "mosaic.log"

        status = main([str(p) for p in paths] + [
            "-o", str(output),
            "--overlap-width", "140",
            "--matcher", "patch",
            "--ot", "UInt16",
            "--export-transforms",
            "--log-file", str(log_file)
        ])

        assert status == 0
        written = tifffile.imread(str(output))
        assert written.dtype == np.uint16
        assert written.shape == (160, 340)
        np.testing.assert_allclose(written, np.rint(scene), atol=1)

        with open(output.with_name("mosaic_layout.json")) as f:
            layout = json.load(f)
        assert layout["num_images"] == 2
        assert layout["canvas_size"] == [340, 160]
        assert log_file.exists()


def test_tqdm_progress_closes_when_done():
    progress = TqdmProgress(desc="test")
    progress(1, 3)
    assert progress.bar is not None
    progress(3, 3)
    assert progress.bar is None


def test_setup_logging_writes_file(tmp_path):
    log_file = tmp_path / "nested" / "run.log"
    logger = setup_logging(logging.DEBUG, log_file)

    logging.getLogger("strip_mosaic.test").debug("hello mosaic")
    for handler in logger.handlers:
        handler.flush()

    assert "hello mosaic" in log_file.read_text()
    assert logging.getLogger("tifffile").level == logging.WARNING
