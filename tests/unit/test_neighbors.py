#!/usr/bin/env python3
"""
Unit tests for searchlight stream I/O and sphere construction.
"""

import numpy as np
import pytest

from ridgelight.analysis.mvpa.neighbors import (
    SearchlightRecord,
    SearchlightStreamError,
    SearchlightStreamReader,
    build_searchlight_neighbors,
    read_searchlight_stream,
    write_searchlight_stream,
)


@pytest.fixture
def lookup():
    return np.array([102, 7, 55, 13], dtype=np.int64)


@pytest.fixture
def records(lookup):
    return [
        SearchlightRecord(center=0, members=(0, 1, 2), location_id=int(lookup[0])),
        SearchlightRecord(center=3, members=(3,), location_id=int(lookup[3])),
        SearchlightRecord(center=2, members=(1, 2, 3), location_id=int(lookup[2])),
    ]


@pytest.fixture
def stream_file(tmp_path, lookup, records):
    return write_searchlight_stream(tmp_path / "searchlights.bin", lookup, records)


class TestStreamRoundTrip:
    def test_read_back(self, stream_file, lookup, records):
        location_ids, decoded = read_searchlight_stream(stream_file)
        np.testing.assert_array_equal(location_ids, lookup)
        assert decoded == records

    def test_on_disk_layout_is_one_based(self, stream_file):
        raw = np.fromfile(stream_file, dtype="<i4")
        # lookup length, ids + 1, then first record: count, center + 1, members + 1
        np.testing.assert_array_equal(raw[:5], [4, 103, 8, 56, 14])
        np.testing.assert_array_equal(raw[5:10], [3, 1, 1, 2, 3])

    def test_zero_based_and_big_endian(self, tmp_path, lookup, records):
        path = write_searchlight_stream(
            tmp_path / "sl.bin", lookup, records, index_base=0, byte_order="big",
        )
        raw = np.fromfile(path, dtype=">i4")
        assert raw[1] == 102
        _, decoded = read_searchlight_stream(path, index_base=0, byte_order="big")
        assert decoded == records

    def test_reader_is_lazy_iterator(self, stream_file):
        with SearchlightStreamReader(stream_file) as reader:
            first = next(iter(reader))
            assert first.location_id == 102
        assert reader._fh is None

    def test_no_records(self, tmp_path, lookup):
        path = write_searchlight_stream(tmp_path / "empty.bin", lookup, [])
        location_ids, decoded = read_searchlight_stream(path)
        assert len(location_ids) == 4
        assert decoded == []


class TestStreamErrors:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_searchlight_stream(tmp_path / "missing.bin")

    def test_truncated_record(self, stream_file):
        data = stream_file.read_bytes()
        stream_file.write_bytes(data[:-4])
        with pytest.raises(SearchlightStreamError, match="truncated"):
            read_searchlight_stream(stream_file)

    def test_truncated_lookup_table(self, tmp_path):
        path = tmp_path / "short.bin"
        np.array([10, 1, 2], dtype="<i4").tofile(path)
        with pytest.raises(SearchlightStreamError, match="truncated"):
            read_searchlight_stream(path)

    def test_center_outside_lookup(self, tmp_path):
        path = tmp_path / "bad_center.bin"
        np.array([2, 5, 6, 1, 3, 1], dtype="<i4").tofile(path)
        with pytest.raises(SearchlightStreamError, match="center"):
            read_searchlight_stream(path)

    def test_member_outside_lookup(self, tmp_path):
        path = tmp_path / "bad_member.bin"
        np.array([2, 5, 6, 2, 1, 1, 9], dtype="<i4").tofile(path)
        with pytest.raises(SearchlightStreamError, match="member"):
            read_searchlight_stream(path)

    def test_iterating_closed_reader(self, stream_file):
        reader = SearchlightStreamReader(stream_file)
        with pytest.raises(SearchlightStreamError, match="not open"):
            list(reader)


class TestBuildNeighbors:
    def test_full_cube_radius_one(self):
        mask = np.ones((3, 3, 3), dtype=bool)
        location_ids, records = build_searchlight_neighbors(mask, radius=1.0)
        assert len(records) == 27
        np.testing.assert_array_equal(location_ids, np.arange(27))

        center = records[13]  # voxel (1, 1, 1)
        assert center.location_id == 13
        assert len(center.members) == 7
        assert 13 in center.members
        assert len(records[0].members) == 4

    def test_location_ids_are_column_major(self):
        mask = np.zeros((4, 5, 6), dtype=bool)
        mask[1, 0, 0] = True
        mask[0, 1, 0] = True
        mask[0, 0, 1] = True
        location_ids, records = build_searchlight_neighbors(mask, radius=0.5)
        np.testing.assert_array_equal(location_ids, [1, 4, 20])
        assert [r.members for r in records] == [(0,), (1,), (2,)]

    def test_members_stay_inside_mask(self):
        mask = np.zeros((5, 5, 5), dtype=bool)
        mask[1:4, 2, 2] = True
        _, records = build_searchlight_neighbors(mask, radius=2.0)
        assert all(max(r.members) < 3 for r in records)
        assert records[0].members == (0, 1, 2)

    def test_anisotropic_voxels(self):
        mask = np.ones((1, 1, 3), dtype=bool)
        _, records = build_searchlight_neighbors(mask, radius=1.5, voxel_size=(1.0, 1.0, 2.0))
        assert records[1].members == (1,)

    def test_rejects_non_3d(self):
        with pytest.raises(ValueError, match="3-D"):
            build_searchlight_neighbors(np.ones((3, 3)))

    def test_rejects_empty_mask(self):
        with pytest.raises(ValueError, match="no voxels"):
            build_searchlight_neighbors(np.zeros((2, 2, 2)))
