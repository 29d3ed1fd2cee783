import pytest

from batcher.utils import MissingInputError
from components.snapshot_provider import write_snapshot
from components.target_selection import (
    rank_targets,
    read_rankings,
    refresh_rankings,
    target_count_for_level,
    write_rankings,
)

from conftest import make_snapshot


def test_rank_by_value_per_harvest_second():
    snaps = [
        make_snapshot(target="slow", maxValue=1000.0, harvestTimeSec=10.0),   # 100/s
        make_snapshot(target="fast", maxValue=600.0, harvestTimeSec=2.0),     # 300/s
        make_snapshot(target="empty", maxValue=0.0, harvestTimeSec=1.0),
        make_snapshot(target="tie-b", maxValue=200.0, harvestTimeSec=1.0),    # 200/s
        make_snapshot(target="tie-a", maxValue=400.0, harvestTimeSec=2.0),    # 200/s
    ]

    ranked = rank_targets(snaps, 10)

    assert [r.target for r in ranked] == ["fast", "tie-a", "tie-b", "slow"]
    assert ranked[0].score == pytest.approx(300.0)
    assert [r.target for r in rank_targets(snaps, 2)] == ["fast", "tie-a"]
    assert rank_targets(snaps, 0) == []


def test_rankings_round_trip(tmp_path):
    ranked = rank_targets([make_snapshot(target="a"), make_snapshot(target="b", maxValue=5.0)], 5)

    path = write_rankings(tmp_path, ranked)

    assert path.name == "top_targets.json"
    assert '"maxValue"' in path.read_text(encoding="utf-8")
    assert read_rankings(tmp_path) == ranked


def test_read_rankings_missing(tmp_path):
    with pytest.raises(MissingInputError):
        read_rankings(tmp_path)


def test_refresh_scans_snapshot_files(tmp_path):
    write_snapshot(tmp_path, make_snapshot(target="x", maxValue=50.0))
    write_snapshot(tmp_path, make_snapshot(target="y", maxValue=500.0))
    (tmp_path / "z-constants.json").write_text("null", encoding="utf-8")
    (tmp_path / "bad-constants.json").write_bytes(b"\xff\xfe{")

    ranked = refresh_rankings(tmp_path, 5)

    assert [r.target for r in ranked] == ["y", "x"]
    assert [r.target for r in read_rankings(tmp_path)] == ["y", "x"]


@pytest.mark.parametrize(
    "level,expected",
    [(0, 10), (1, 10), (100, 19), (200, 28), (999, 99), (1000, 99), (5000, 99)],
)
def test_target_count_for_level(level, expected):
    assert target_count_for_level(level) == expected
