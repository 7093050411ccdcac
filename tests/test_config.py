"""Tests for graph-file loading and graph construction."""

import textwrap

import pytest

from graphbuild.config import SAMPLE_CONFIG, load_config, load_graph
from graphbuild.engine import ExecutionEngine
from graphbuild.errors import ConfigError, CycleError
from graphbuild.model import NodeType
from graphbuild.status import Status

from conftest import RecordingExecutor


def _write(tmp_path, text, name="buildconfig.yml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text))
    return path


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.yml")

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path, "tasks: [\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_empty_file(self, tmp_path):
        config = load_config(_write(tmp_path, ""))
        assert config.specs == {}

    def test_settings_defaults_and_overrides(self, tmp_path):
        config = load_config(_write(tmp_path, """
            settings:
              max_parallel: 3
              verbosity: VERBOSE
              upstream_policy: any_success
              command_timeout: 30
        """))
        s = config.settings
        assert s.max_parallel == 3
        assert s.verbosity == "verbose"
        assert s.upstream_policy == "any_success"
        assert s.command_timeout == 30.0
        assert s.artifact_keep == 3
        assert s.log_dir == "build/logs"

    @pytest.mark.parametrize(
        "settings",
        [
            "max_parallel: 0",
            "verbosity: loud",
            "upstream_policy: sometimes",
            "artifact_keep: -1",
            "command_timeout: soon",
            "colour: true",
        ],
    )
    def test_bad_settings(self, tmp_path, settings):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, f"settings:\n  {settings}\n"))

    def test_unknown_top_level(self, tmp_path):
        with pytest.raises(ConfigError, match="Unknown top-level"):
            load_config(_write(tmp_path, "jobs: []\n"))

    def test_duplicate_names(self, tmp_path):
        with pytest.raises(ConfigError, match="Duplicate node name: a"):
            load_config(_write(tmp_path, """
                tasks:
                  - {name: a, command: "true"}
                platforms:
                  - {name: a, build_command: "true"}
            """))

    def test_unknown_reference(self, tmp_path):
        with pytest.raises(ConfigError, match="unknown node 'ghost'"):
            load_config(_write(tmp_path, """
                tasks:
                  - {name: a, command: "true", dependencies: [ghost]}
            """))

    def test_unknown_task_key(self, tmp_path):
        with pytest.raises(ConfigError, match="unknown keys"):
            load_config(_write(tmp_path, """
                tasks:
                  - {name: a, run: "true"}
            """))

    def test_scalars_normalized_to_lists(self, tmp_path):
        config = load_config(_write(tmp_path, """
            tasks:
              - {name: a, command: "true"}
              - name: b
                command: "true"
                dependencies: a
                artifacts: out.txt
                notifies_on_failure: {name: a, args: {reason: broken}}
        """))
        b = config.specs["b"]
        assert [r.name for r in b.dependencies] == ["a"]
        assert b.artifacts == ["out.txt"]
        assert b.notifies_on_failure[0].args == {"reason": "broken"}

    def test_platform_build_command(self, tmp_path):
        config = load_config(_write(tmp_path, """
            platforms:
              - {name: mac, build_command: ./build.sh mac}
        """))
        assert config.specs["mac"].command == "./build.sh mac"
        assert config.specs["mac"].section == "platforms"

    def test_args_from_must_be_self(self, tmp_path):
        with pytest.raises(ConfigError, match="args_from"):
            load_config(_write(tmp_path, """
                tasks:
                  - {name: a, command: "true"}
                  - {name: b, command: "true", notifies: [{name: a, args_from: parent}]}
            """))


class TestLoadGraph:
    def test_all_nodes_by_default(self, tmp_path):
        config = load_config(_write(tmp_path, SAMPLE_CONFIG))
        reg = load_graph(config)
        names = sorted({n.name for n in reg.nodes()})
        assert names == ["compile", "fetch", "linux", "publish", "release", "report-failure", "test"]
        # one node per logical unit
        assert len(reg) == 7

    def test_targets_pull_in_references_as_dep_variants(self, tmp_path):
        config = load_config(_write(tmp_path, SAMPLE_CONFIG))
        reg = load_graph(config, ["test"])
        assert reg.lookup_by_key("test") is not None
        compile_node = reg.lookup_by_key("compile|target=all|dep")
        assert compile_node is not None
        assert reg.lookup_by_name_and_args("compile") is compile_node
        assert reg.lookup_by_key("fetch|dep") is not None
        assert reg.lookup_by_key("release") is None

    def test_shared_dependency_instantiated_once(self, tmp_path):
        config = load_config(_write(tmp_path, """
            tasks:
              - {name: base, command: "true"}
              - {name: a, command: "true", dependencies: [base]}
              - {name: b, command: "true", dependencies: [base]}
        """))
        reg = load_graph(config, ["a", "b"])
        a = reg.lookup_by_key("a")
        b = reg.lookup_by_key("b")
        assert a.dependencies[0] is b.dependencies[0]
        assert len(reg) == 3

    def test_explicit_target_and_reference_unify(self, tmp_path):
        config = load_config(_write(tmp_path, """
            tasks:
              - {name: base, command: "true"}
              - {name: a, command: "true", dependencies: [base]}
        """))
        reg = load_graph(config, ["base", "a"])
        assert len(reg) == 2
        assert reg.lookup_by_key("a").dependencies == [reg.lookup_by_key("base")]

    def test_args_make_distinct_nodes(self, tmp_path):
        config = load_config(_write(tmp_path, """
            tasks:
              - {name: build, command: "make ${os}", args: {os: linux}}
              - name: all
                dependencies: [build, {name: build, args: {os: mac}}]
        """))
        reg = load_graph(config, ["all"])
        deps = reg.lookup_by_key("all").dependencies
        assert [d.expanded_command() for d in deps] == ["make linux", "make mac"]

    def test_groups_and_children(self, tmp_path):
        config = load_config(_write(tmp_path, SAMPLE_CONFIG))
        reg = load_graph(config, ["release"])
        release = reg.lookup_by_key("release")
        assert release.type is NodeType.GROUP
        assert sorted(c.name for c in release.children) == ["linux", "test"]
        assert all(release in c.parents for c in release.children)

    def test_cycle_rejected(self, tmp_path):
        config = load_config(_write(tmp_path, """
            tasks:
              - {name: a, command: "true", dependencies: [b]}
              - {name: b, command: "true", dependencies: [a]}
        """))
        with pytest.raises(CycleError) as exc:
            load_graph(config, ["a"])
        assert exc.value.path[0] == exc.value.path[-1]

    def test_group_member_notifying_its_group_rejected(self, tmp_path):
        config = load_config(_write(tmp_path, """
            tasks:
              - {name: mac, command: "true", notifies_on_success: [release]}
            groups:
              - {name: release, children: [mac]}
        """))
        with pytest.raises(CycleError) as exc:
            load_graph(config)
        assert exc.value.kind == "scheduling"
        assert exc.value.path[0] == exc.value.path[-1]

    def test_unknown_target(self, tmp_path):
        config = load_config(_write(tmp_path, SAMPLE_CONFIG))
        with pytest.raises(ConfigError, match="Unknown target"):
            load_graph(config, ["deploy"])

    def test_notification_args_from_self(self, tmp_path):
        config = load_config(_write(tmp_path, """
            tasks:
              - name: build
                command: "true"
                args: {os: mac}
                notifies_on_success: [{name: publish, args_from: self}]
              - {name: publish, command: "publish ${os}"}
        """))
        reg = load_graph(config, ["build"])
        reg.process_notifications()
        publish = reg.lookup_by_name_and_args("publish", {"os": "mac"})
        assert publish is not None
        assert publish.expanded_command() == "publish mac"
        assert [n.name for n in publish.notified_by] == ["build"]

    def test_sample_config_validates_end_to_end(self, tmp_path):
        config = load_config(_write(tmp_path, SAMPLE_CONFIG))
        recorder = RecordingExecutor()
        result = ExecutionEngine(load_graph(config), recorder, validate=True).execute()
        assert recorder.calls == []
        assert result.success
        assert result.statuses[load_graph_node(result, "report-failure")] is Status.SKIPPED
        assert result.statuses[load_graph_node(result, "publish")] is Status.DONE


def load_graph_node(result, name):
    return next(n for n in result.statuses if n.name == name)


class TestPythonGraph:
    def test_graph_function(self, tmp_path):
        path = _write(tmp_path, """
            from graphbuild.dsl import build_graph, task

            SETTINGS = {"max_parallel": 2}

            def graph():
                fetch = task("fetch", "echo fetch")
                return build_graph(fetch, task("compile", "echo compile", depends_on=[fetch]))
        """, name="graph_def.py")
        config = load_config(path)
        assert config.settings.max_parallel == 2
        reg = load_graph(config)
        compile_node = reg.lookup_by_key("compile")
        assert [d.name for d in compile_node.dependencies] == ["fetch"]

    def test_graph_constant_list(self, tmp_path):
        path = _write(tmp_path, """
            from graphbuild.dsl import graph, task

            a = task("a", "true")
            GRAPH = [a, task("b", "true", depends_on=[a])]
        """, name="listed.py")
        reg = load_graph(load_config(path))
        assert len(reg) == 2

    def test_target_subset(self, tmp_path):
        path = _write(tmp_path, """
            from graphbuild.dsl import build_graph, task

            a = task("a", "true")
            GRAPH = build_graph(a, task("b", "true", depends_on=[a]), task("c", "true"))
        """, name="subset.py")
        reg = load_graph(load_config(path), ["b"])
        assert sorted(n.name for n in reg.nodes()) == ["a", "b"]

    def test_wrong_return_type(self, tmp_path):
        path = _write(tmp_path, "GRAPH = 42\n", name="bad.py")
        with pytest.raises(ConfigError, match="Registry or a list of Nodes"):
            load_config(path)

    def test_file_raises(self, tmp_path):
        path = _write(tmp_path, "raise RuntimeError('boom')\n", name="boom.py")
        with pytest.raises(ConfigError, match="Failed to execute"):
            load_config(path)
