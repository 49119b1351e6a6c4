import numpy as np
import pytest

from hybridpose.dataset.pairs import load_matched_pair
from hybridpose.system.correspondences import CorrespondenceSet


def test_load_npz(tmp_path, shared_scene):
    path = tmp_path / "pair.npz"
    np.savez(path, x0=shared_scene.p0, x1=shared_scene.p1, depth0=shared_scene.d0, depth1=shared_scene.d1,
             pp0=np.array([320.0, 240.0]))
    pair = load_matched_pair(str(path))
    assert len(pair) == len(shared_scene.data)
    assert np.allclose(pair.x0, shared_scene.p0)
    assert pair.weights is None
    assert pair.pp1 is None
    assert np.allclose(pair.pp0, [320.0, 240.0])
    assert np.allclose(pair.resolved_min_depth(), shared_scene.min_depth)


def test_load_npz_requires_core_arrays(tmp_path):
    path = tmp_path / "bad.npz"
    np.savez(path, x0=np.zeros((3, 2)), x1=np.zeros((3, 2)))
    with pytest.raises(ValueError):
        load_matched_pair(str(path))


def test_load_txt_with_weights(tmp_path):
    path = tmp_path / "pair.txt"
    path.write_text(
        "# x0 y0 x1 y1 d0 d1 w\n"
        "10 20 11 21 2.0 2.5 0.9\n"
        "\n"
        "30 40 31 41 3.0 3.5 0.5\n"
        "50 60 51 61 4.0 4.5 1.0\n",
        encoding="utf-8",
    )
    pair = load_matched_pair(str(path))
    assert len(pair) == 3
    assert np.allclose(pair.depth1, [2.5, 3.5, 4.5])
    assert np.allclose(pair.weights, [0.9, 0.5, 1.0])
    assert np.allclose(pair.resolved_min_depth(), [2.0, 2.5])


def test_load_txt_without_weights(tmp_path):
    path = tmp_path / "pair.txt"
    path.write_text("1 2 3 4 5 6\n7 8 9 10 11 12\n", encoding="utf-8")
    pair = load_matched_pair(str(path))
    assert pair.weights is None
    assert np.allclose(pair.x1, [[3, 4], [9, 10]])


def test_empty_txt_is_rejected(tmp_path):
    path = tmp_path / "empty.txt"
    path.write_text("# nothing here\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_matched_pair(str(path))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_matched_pair(str(tmp_path / "nope.npz"))


def test_correspondence_set_validates_input():
    x = np.zeros((4, 2))
    d = np.ones(4)
    with pytest.raises(ValueError):
        CorrespondenceSet.from_arrays(x, np.zeros((3, 2)), d, d)
    with pytest.raises(ValueError):
        CorrespondenceSet.from_arrays(x, x, d, np.array([1.0, np.nan, 1.0, 1.0]))
    with pytest.raises(ValueError):
        CorrespondenceSet.from_arrays(x, x, d, d, weights=-d)
    with pytest.raises(ValueError):
        CorrespondenceSet.from_arrays(x, x, d, d, min_depth=[1.0])


def test_correspondence_set_is_read_only():
    data = CorrespondenceSet.from_arrays(np.zeros((2, 2)), np.zeros((2, 2)), [1.0, 2.0], [3.0, 4.0])
    assert data.x0.shape == (2, 3)
    assert np.allclose(data.min_depth, [1.0, 3.0])
    with pytest.raises(ValueError):
        data.depth0[0] = 5.0
