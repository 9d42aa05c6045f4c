"""Tests for lux_patcher.core.differ module."""

import hashlib

import pytest

from lux_patcher.core.differ import compute_diff, summarize
from lux_patcher.core.errors import ConflictError
from lux_patcher.core.types import (
    AddOperation,
    DeleteOperation,
    DeltaSource,
    FileEntry,
    Manifest,
    UpdateOperation,
)


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def entry(path: str, data: bytes, **kwargs) -> FileEntry:
    return FileEntry(path=path, size=len(data), hash=md5(data), **kwargs)


class TestComputeDiff:
    """Test manifest reconciliation."""

    def test_identical_manifests(self):
        """Test equal manifests need no operations."""
        manifest = Manifest([entry("a.txt", b"a"), entry("b.txt", b"b")])
        assert compute_diff(manifest, manifest) == []

    def test_add_update_delete(self):
        """Test one of each classification."""
        desired = Manifest([entry("a.txt", b"a2"), entry("b.txt", b"b")])
        actual = Manifest([entry("a.txt", b"a1"), entry("c.txt", b"c")])

        ops = compute_diff(desired, actual)

        assert ops == [
            UpdateOperation(entry("a.txt", b"a2")),
            AddOperation(entry("b.txt", b"b")),
            DeleteOperation("c.txt"),
        ]

    def test_empty_actual(self):
        """Test a fresh install adds every file."""
        desired = Manifest([entry("b.txt", b"b"), entry("a.txt", b"a")])
        ops = compute_diff(desired, Manifest())
        assert [type(op) for op in ops] == [AddOperation, AddOperation]
        assert [op.path for op in ops] == ["a.txt", "b.txt"]

    def test_empty_desired(self):
        """Test an empty manifest deletes everything."""
        actual = Manifest([entry("a.txt", b"a")])
        assert compute_diff(Manifest(), actual) == [DeleteOperation("a.txt")]

    def test_sorted_by_normalized_key(self):
        """Test order is lexicographic by normalized path."""
        desired = Manifest([entry("b/x", b"1"), entry("B.txt", b"2"), entry("a/Z", b"3")])
        ops = compute_diff(desired, Manifest())
        assert [op.key for op in ops] == sorted(op.key for op in ops)

    def test_deterministic(self):
        """Test repeated diffs are identical."""
        desired = Manifest([entry(f"f{i}", bytes([i])) for i in range(30)])
        actual = Manifest([entry(f"f{i}", bytes([i + 1])) for i in range(0, 30, 2)])
        assert compute_diff(desired, actual) == compute_diff(desired, actual)

    def test_one_operation_per_path(self):
        """Test no path appears twice."""
        desired = Manifest([entry("a", b"1"), entry("b", b"2"), entry("c", b"3")])
        actual = Manifest([entry("b", b"x"), entry("c", b"3"), entry("d", b"4")])
        keys = [op.key for op in compute_diff(desired, actual)]
        assert len(keys) == len(set(keys))

    def test_delta_preferred_when_source_matches(self):
        """Test a matching delta source produces a delta update."""
        old, new = b"version one", b"version two"
        desired = Manifest([entry("a.dat", new, delta=DeltaSource(from_hash=md5(old), size=12))])
        actual = Manifest([entry("a.dat", old)])

        (op,) = compute_diff(desired, actual)

        assert isinstance(op, UpdateOperation)
        assert op.is_delta
        assert op.from_hash == md5(old)

    def test_full_replace_when_delta_source_differs(self):
        """Test a delta for another version is not used."""
        desired = Manifest(
            [entry("a.dat", b"new", delta=DeltaSource(from_hash=md5(b"older"), size=5))]
        )
        actual = Manifest([entry("a.dat", b"old")])

        (op,) = compute_diff(desired, actual)

        assert isinstance(op, UpdateOperation)
        assert not op.is_delta

    def test_case_only_rename_same_content(self):
        """Test a case-only rename with equal content is a no-op."""
        desired = Manifest([entry("Client/Foo.dat", b"foo")])
        actual = Manifest([entry("client/foo.dat", b"foo")])
        assert compute_diff(desired, actual) == []

    def test_case_only_rename_new_content(self):
        """Test a case-only rename with new content is one update."""
        desired = Manifest([entry("Client/Foo.dat", b"new")])
        actual = Manifest([entry("client/foo.dat", b"old")])

        ops = compute_diff(desired, actual)

        assert ops == [UpdateOperation(entry("Client/Foo.dat", b"new"), local_path="client/foo.dat")]

    def test_zero_byte_files(self):
        """Test empty files diff by hash like any other."""
        desired = Manifest([entry("empty.txt", b""), entry("was_empty.txt", b"data")])
        actual = Manifest([entry("empty.txt", b""), entry("was_empty.txt", b"")])

        ops = compute_diff(desired, actual)

        assert ops == [UpdateOperation(entry("was_empty.txt", b"data"))]

    def test_applying_diff_reaches_fixpoint(self):
        """Test applying the operations to actual yields desired."""
        desired = Manifest([entry("a", b"1"), entry("B", b"2"), entry("c/d", b"3")])
        actual = Manifest([entry("a", b"0"), entry("b", b"2"), entry("e", b"5")])

        state = {e.key: e for e in actual}
        for op in compute_diff(desired, actual):
            if isinstance(op, DeleteOperation):
                del state[op.key]
            else:
                state[op.key] = op.entry

        converged = Manifest(state.values())
        assert compute_diff(desired, converged) == []

    def test_conflicting_desired_manifest(self):
        """Test duplicate case-variant paths are rejected before diffing."""
        with pytest.raises(ConflictError):
            Manifest([entry("a.txt", b"1"), entry("A.TXT", b"2")])


class TestSummarize:
    """Test operation summaries."""

    def test_counts_and_bytes(self):
        """Test counts per kind and estimated download size."""
        old = b"old"
        ops = [
            AddOperation(entry("a", b"12345", compressed_size=3, compressed_hash=md5(b"x"))),
            UpdateOperation(entry("b", b"1234")),
            UpdateOperation(
                entry("c", b"new", delta=DeltaSource(from_hash=md5(old), size=2)),
                from_hash=md5(old),
            ),
            DeleteOperation("d"),
        ]

        summary = summarize(ops)

        assert summary.added == 1
        assert summary.updated == 2
        assert summary.deleted == 1
        assert summary.delta_updates == 1
        assert summary.download_bytes == 3 + 4 + 2
        assert summary.total == 4
