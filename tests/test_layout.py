import pytest

from callcore.layout import TileSize, compute_layout


def test_empty_layout() -> None:
    assert compute_layout(0, 300, 600) == []


def test_single_participant_fills_surface() -> None:
    assert compute_layout(1, 300, 600) == [(300, 600)]


def test_two_participants_stack_vertically() -> None:
    assert compute_layout(2, 300, 600) == [(300, 300), (300, 300)]


@pytest.mark.parametrize("count", [3, 4])
def test_three_and_four_share_a_two_by_two_grid(count: int) -> None:
    assert compute_layout(count, 400, 400) == [TileSize(200, 200)] * count


@pytest.mark.parametrize("count", [5, 6, 9, 12])
def test_five_or_more_use_a_three_by_three_grid(count: int) -> None:
    assert compute_layout(count, 300, 300) == [TileSize(100, 100)] * count


def test_length_always_matches_count() -> None:
    for count in range(0, 20):
        assert len(compute_layout(count, 390.0, 844.0)) == count


def test_area_never_exceeds_surface_up_to_nine() -> None:
    width, height = 390.0, 844.0
    for count in range(1, 10):
        tiles = compute_layout(count, width, height)
        assert sum(tile.width * tile.height for tile in tiles) <= width * height + 1e-6


def test_invalid_arguments() -> None:
    with pytest.raises(ValueError):
        compute_layout(-1, 100, 100)
    with pytest.raises(ValueError):
        compute_layout(1, 0, 100)
    with pytest.raises(ValueError):
        compute_layout(1, 100, -5)
