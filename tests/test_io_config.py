"""Config loading and frame I/O."""

import numpy as np
import pytest

from conftest import RecordingProgress, stamped_frames
from stabilization.config import config_from_dict, config_to_dict, load_config
from stabilization.errors import InputUnavailableError, OutputUnavailableError
from stabilization.io import ArraySource, VideoSink, load_video, open_source
from stabilization.video_state import Video


def test_load_config_reads_nested_yaml(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "stabilizer:\n"
        "  tracker:\n"
        "    detector: orb\n"
        "  ransac:\n"
        "    seed: 7\n"
        "  path:\n"
        "    weights: [0, 1, 100]\n"
        "    max_shift_x: 12\n"
        "  crop:\n"
        "    ratio: 0.7\n",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.tracker.detector == "orb"
    assert cfg.ransac.seed == 7
    assert cfg.path.weights == (0.0, 1.0, 100.0)
    assert cfg.path.max_shift_x == 12
    assert cfg.crop.ratio == 0.7
    assert cfg.crop.policy == "static"
    assert config_to_dict(cfg)["path"]["weights"] == [0.0, 1.0, 100.0]


def test_config_rejects_unknown_keys_and_bad_weights(tmp_path):
    with pytest.raises(ValueError):
        config_from_dict({"path": {"smoothness": 3}})
    with pytest.raises(ValueError):
        config_from_dict({"render": {}})
    with pytest.raises(ValueError):
        config_from_dict({"path": {"weights": [1, 2]}})
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_load_video_from_array_source():
    recorder = RecordingProgress()
    video = load_video(ArraySource(stamped_frames(6)), max_frames=4, progress=recorder)
    assert video.frame_count == 4
    assert video.fps == 30.0
    assert [frame.index for frame in video] == [0, 1, 2, 3]
    assert recorder.progress_for("video_loading") == [1, 2, 3, 4]


def test_load_video_rejects_empty_and_mismatched_sources():
    with pytest.raises(InputUnavailableError):
        load_video(ArraySource([]))
    frames = stamped_frames(2) + [np.zeros((10, 10, 3), dtype=np.uint8)]
    with pytest.raises(InputUnavailableError) as excinfo:
        load_video(ArraySource(frames, fps=25.0))
    assert excinfo.value.frame_index == 2


def test_open_source_missing_path(tmp_path):
    with pytest.raises(InputUnavailableError):
        open_source(tmp_path / "nope.mp4")
    empty_dir = tmp_path / "frames"
    empty_dir.mkdir()
    with pytest.raises(InputUnavailableError):
        open_source(empty_dir)


def test_video_sink_publishes_only_finished_file(tmp_path):
    video = Video.from_images(stamped_frames(5, width=64, height=48), fps=10.0)
    target = tmp_path / "out" / "clip.avi"

    written = VideoSink(target, fourcc="MJPG").write(video)

    assert written == target
    assert target.exists()
    assert not (target.parent / ".clip.partial.avi").exists()
    with open_source(target) as source:
        reread = load_video(source)
    assert reread.frame_count == 5
    assert reread.frame_size == (64, 48)


def test_frame_directory_round_trip(tmp_path):
    import cv2

    for t, image in enumerate(stamped_frames(3, width=32, height=24)):
        cv2.imwrite(str(tmp_path / f"frame_{t + 1}.png"), image * 40)
    with open_source(tmp_path, fps=12.0) as source:
        video = load_video(source)
    assert video.fps == 12.0
    assert [int(frame.image[0, 0, 0]) for frame in video] == [0, 40, 80]


def test_video_sink_reports_unwritable_destination(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x", encoding="utf-8")
    video = Video.from_images(stamped_frames(2, width=32, height=24), fps=10.0)
    with pytest.raises(OutputUnavailableError):
        VideoSink(blocker / "clip.avi", fourcc="MJPG").write(video)
