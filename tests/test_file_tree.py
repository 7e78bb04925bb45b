"""Unit tests for the local virtual file tree — pure data, no sandbox needed."""

import pytest

from sandbox_sync_server import (
    FileTree,
    Node,
    NodeKind,
    StructuralError,
    UnknownNode,
)


def _sample() -> tuple[FileTree, dict[str, str]]:
    t = FileTree("/home/user")
    src = t.create("root", "src", NodeKind.FOLDER)
    lib = t.create(src.id, "lib", NodeKind.FOLDER)
    index = t.create(src.id, "index.ts", NodeKind.FILE, "a")
    util = t.create(lib.id, "util.ts", NodeKind.FILE, "b")
    readme = t.create("root", "README.md", NodeKind.FILE)
    return t, {
        "src": src.id,
        "lib": lib.id,
        "index": index.id,
        "util": util.id,
        "readme": readme.id,
    }


# ── Creation ────────────────────────────────────────────────────────────


class TestCreate:
    def test_starts_with_expanded_root(self):
        t = FileTree()
        assert len(t) == 1
        assert t.root.is_folder
        assert t.root.expanded is True
        assert t.base_path == "/home/user"

    def test_new_folder_is_expanded(self):
        t = FileTree()
        folder = t.create("root", "src", "folder")
        assert folder.kind is NodeKind.FOLDER
        assert folder.expanded is True
        assert folder.content is None

    def test_new_file_has_empty_content(self):
        t = FileTree()
        f = t.create("root", "a.txt", NodeKind.FILE)
        assert f.content == ""
        assert f.expanded is None

    def test_ids_are_unique(self):
        t = FileTree()
        ids = {t.create("root", f"f{i}", NodeKind.FILE).id for i in range(20)}
        assert len(ids) == 20
        assert "root" not in ids

    def test_unknown_parent(self):
        t = FileTree()
        with pytest.raises(StructuralError):
            t.create("nope", "a", NodeKind.FILE)

    def test_file_parent_rejected(self):
        t = FileTree()
        f = t.create("root", "a", NodeKind.FILE)
        with pytest.raises(StructuralError):
            t.create(f.id, "b", NodeKind.FILE)

    def test_duplicate_sibling_names_coexist(self):
        t = FileTree()
        a = t.create("root", "x.txt", NodeKind.FILE, "1")
        b = t.create("root", "x.txt", NodeKind.FILE, "2")
        assert a.id != b.id
        assert t.resolve_path(a.id) == t.resolve_path(b.id)
        # First node wins in the path index
        assert t.path_index()["/home/user/x.txt"] == a.id

    def test_insert_duplicate_id(self):
        t = FileTree()
        t.insert(Node("p-1", "root", "a", NodeKind.FILE, content=""))
        with pytest.raises(StructuralError):
            t.insert(Node("p-1", "root", "b", NodeKind.FILE, content=""))

    def test_get_unknown(self):
        with pytest.raises(UnknownNode):
            FileTree().get("missing")


# ── Ordering and paths ──────────────────────────────────────────────────


class TestChildrenAndPaths:
    def test_folders_before_files_then_by_name(self):
        t = FileTree()
        t.create("root", "b.txt", NodeKind.FILE)
        t.create("root", "zeta", NodeKind.FOLDER)
        t.create("root", "a.txt", NodeKind.FILE)
        t.create("root", "alpha", NodeKind.FOLDER)
        assert [n.name for n in t.children("root")] == ["alpha", "zeta", "a.txt", "b.txt"]

    def test_resolve_paths(self):
        t, ids = _sample()
        assert t.resolve_path("root") == "/home/user"
        assert t.resolve_path(ids["src"]) == "/home/user/src"
        assert t.resolve_path(ids["util"]) == "/home/user/src/lib/util.ts"

    def test_base_slash(self):
        t = FileTree("/")
        f = t.create("root", "etc", NodeKind.FOLDER)
        assert t.resolve_path(f.id) == "/etc"
        assert t.resolve_path("root") == "/"

    def test_path_index_is_bijective(self):
        t, _ = _sample()
        index = t.path_index()
        assert len(index) == len(t)
        assert {t.resolve_path(i) for i in index.values()} == set(index)

    def test_node_at(self):
        t, ids = _sample()
        assert t.node_at("/home/user/src/index.ts").id == ids["index"]
        assert t.node_at("/home/user/missing") is None

    def test_find_child(self):
        t, ids = _sample()
        assert t.find_child(ids["src"], "lib").id == ids["lib"]
        assert t.find_child(ids["src"], "nope") is None

    def test_cycle_detected(self):
        t, ids = _sample()
        t.get(ids["src"]).parent_id = ids["lib"]
        with pytest.raises(StructuralError):
            t.resolve_path(ids["util"])

    def test_orphan_detected(self):
        t, ids = _sample()
        t.get(ids["lib"]).parent_id = "gone"
        with pytest.raises(StructuralError):
            t.resolve_path(ids["util"])


# ── Mutation ────────────────────────────────────────────────────────────


class TestMutation:
    def test_update_file(self):
        t, ids = _sample()
        t.update(ids["index"], "new")
        assert t.get(ids["index"]).content == "new"

    def test_update_folder_rejected(self):
        t, ids = _sample()
        with pytest.raises(StructuralError):
            t.update(ids["src"], "x")

    def test_toggle(self):
        t, ids = _sample()
        assert t.toggle(ids["src"]).expanded is False
        assert t.toggle(ids["src"]).expanded is True

    def test_toggle_file_rejected(self):
        t, ids = _sample()
        with pytest.raises(StructuralError):
            t.toggle(ids["index"])

    def test_expand(self):
        t, ids = _sample()
        t.toggle(ids["lib"])
        t.expand(ids["lib"])
        assert t.get(ids["lib"]).expanded is True


# ── Deletion ────────────────────────────────────────────────────────────


class TestDelete:
    def test_removes_exactly_the_subtree(self):
        t, ids = _sample()
        removed = t.delete_subtree(ids["src"])
        assert set(removed) == {ids["src"], ids["lib"], ids["index"], ids["util"]}
        assert removed[0] == ids["src"]
        assert ids["readme"] in t
        assert len(t) == 2

    def test_descendants(self):
        t, ids = _sample()
        assert set(t.descendants(ids["src"])) == {ids["lib"], ids["index"], ids["util"]}
        assert t.descendants(ids["readme"]) == []

    def test_root_cannot_be_deleted(self):
        t, _ = _sample()
        with pytest.raises(StructuralError):
            t.delete_subtree("root")

    def test_prunes_open_files_and_reassigns_active(self):
        t, ids = _sample()
        t.open_file(ids["readme"])
        t.open_file(ids["index"])
        t.open_file(ids["util"])
        assert t.active_id == ids["util"]
        t.delete_subtree(ids["lib"])
        assert t.open_files == [ids["readme"], ids["index"]]
        assert t.active_id == ids["index"]

    def test_active_cleared_when_nothing_left_open(self):
        t, ids = _sample()
        t.open_file(ids["util"])
        t.delete_subtree(ids["src"])
        assert t.open_files == []
        assert t.active_id is None

    def test_active_untouched_when_outside_subtree(self):
        t, ids = _sample()
        t.open_file(ids["util"])
        t.open_file(ids["readme"])
        t.delete_subtree(ids["src"])
        assert t.open_files == [ids["readme"]]
        assert t.active_id == ids["readme"]

    def test_cycle_fails_before_anything_is_removed(self):
        t, ids = _sample()
        t.get(ids["src"]).parent_id = ids["lib"]
        with pytest.raises(StructuralError):
            t.delete_subtree(ids["lib"])
        assert len(t) == 6


# ── Open files ──────────────────────────────────────────────────────────


class TestOpenFiles:
    def test_open_has_no_duplicates(self):
        t, ids = _sample()
        t.open_file(ids["index"])
        t.open_file(ids["readme"])
        t.open_file(ids["index"])
        assert t.open_files == [ids["index"], ids["readme"]]
        assert t.active_id == ids["index"]

    def test_open_folder_rejected(self):
        t, ids = _sample()
        with pytest.raises(StructuralError):
            t.open_file(ids["src"])

    def test_close_active_falls_back(self):
        t, ids = _sample()
        t.open_file(ids["index"])
        t.open_file(ids["readme"])
        t.close_file(ids["readme"])
        assert t.active_id == ids["index"]
        assert t.active_file().name == "index.ts"
        t.close_file(ids["index"])
        assert t.active_file() is None

    def test_close_not_open_is_noop(self):
        t, ids = _sample()
        t.close_file(ids["index"])
        assert t.open_files == []

    def test_set_active(self):
        t, ids = _sample()
        t.set_active(ids["util"])
        assert t.open_files == [ids["util"]]
        t.set_active(None)
        assert t.active_id is None
        assert t.open_files == [ids["util"]]


# ── Adopt / render ──────────────────────────────────────────────────────


class TestAdoptAndRender:
    def test_adopt_replaces_nodes_and_clears_tabs(self):
        t, ids = _sample()
        t.open_file(ids["index"])
        fresh = FileTree("/home/user", root_id="fresh-root")
        d = fresh.create("fresh-root", "app", NodeKind.FOLDER)
        fresh.create(d.id, "main.py", NodeKind.FILE, "print()")

        t.adopt(fresh)

        assert t.root_id == "root"
        assert sorted(t.path_index()) == [
            "/home/user",
            "/home/user/app",
            "/home/user/app/main.py",
        ]
        assert t.open_files == []
        assert t.active_id is None
        assert ids["index"] not in t

    def test_render_marks_tabs_and_collapsed_folders(self):
        t, ids = _sample()
        t.open_file(ids["readme"])
        t.open_file(ids["index"])
        t.toggle(ids["lib"])
        assert t.render().splitlines() == [
            "/home/user",
            "  src/",
            "    lib/ (collapsed)",
            "    index.ts *",
            "  README.md +",
        ]
