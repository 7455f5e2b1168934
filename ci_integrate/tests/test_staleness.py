"""
test_staleness — snapshots and the stale-set diff.

Tests verify invariant properties:
  - P ∈ diff(pre, post) iff P ∉ pre or post[P] > pre[P].
  - Unchanged paths never appear; removed paths never appear.
  - Snapshots are flat and ignore missing directories.
"""
import os
from pathlib import Path

from ci_integrate.core.staleness import FileSnapshot, StaleSet, diff, snapshot, tracked_dirs


class TestDiff:

    def test_new_and_newer_paths(self):
        pre = {Path("a"): 10, Path("b"): 20, Path("c"): 30}
        post = {Path("a"): 10, Path("b"): 21, Path("c"): 30, Path("d"): 1}

        stale = diff(pre, post)

        assert stale.paths == frozenset({Path("b"), Path("d")})

    def test_equal_or_older_is_fresh(self):
        pre = {Path("a"): 10, Path("b"): 20}
        post = {Path("a"): 10, Path("b"): 19}
        assert not diff(pre, post)

    def test_removed_paths_ignored(self):
        assert not diff({Path("gone"): 5}, {})

    def test_empty_pre_marks_everything(self):
        post = {Path("a"): 1, Path("b"): 2}
        assert diff({}, post).paths == frozenset(post)

    def test_iff_property_over_grid(self):
        paths = [Path(f"f{i}") for i in range(6)]
        pre = {p: 100 for p in paths[:4]}
        post = {paths[0]: 100, paths[1]: 101, paths[2]: 99, paths[4]: 1, paths[5]: 100}

        stale = diff(pre, post)

        for p in post:
            expected = p not in pre or post[p] > pre[p]
            assert (p in stale) == expected


class TestStaleSet:

    def test_ir_files_filter(self):
        stale = StaleSet(frozenset({
            Path("deps/hello-1.hello.a-cgu.0.rcgu.ll"),
            Path("deps/hello-1.hello.a-cgu.0.rcgu-ci.ll"),
            Path("deps/hello-1.hello.a-cgu.0.rcgu.o"),
            Path("deps/hello-1.d"),
        }))
        assert stale.ir_files() == [Path("deps/hello-1.hello.a-cgu.0.rcgu.ll")]

    def test_unit_idents_exact(self):
        stale = StaleSet(frozenset({
            Path("deps/foobar-12ab"),
            Path("deps/libserde-99.rlib"),
        }))
        assert stale.unit_idents({"foo", "foobar"}) == {"foobar"}


class TestSnapshot:

    def test_flat_and_missing_dirs(self, output_dir):
        deps = output_dir / "deps"
        (deps / "a.o").write_text("a")
        (deps / "nested").mkdir()
        (deps / "nested" / "b.o").write_text("b")

        snap = snapshot(*tracked_dirs(output_dir), output_dir / "nope")

        assert isinstance(snap, FileSnapshot)
        assert list(snap) == [deps / "a.o"]

    def test_rewrite_detected(self, output_dir):
        f = output_dir / "deps" / "hello-1"
        f.write_text("v1")
        pre = snapshot(*tracked_dirs(output_dir))

        f.write_text("v2")
        st = f.stat()
        os.utime(f, ns=(st.st_atime_ns, pre[f] + 1_000_000))
        post = snapshot(*tracked_dirs(output_dir))

        assert f in diff(pre, post)
