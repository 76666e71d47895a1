"""Tests for the YAML task document loader."""

import textwrap

import pytest

from provisor.exceptions import PlaybookError, UnknownTaskTypeError
from provisor.loader import load_playbook, parse_playbook
from provisor.types import BecomeSpec


def write(path, text):
    path.write_text(textwrap.dedent(text))
    return path


def only_task(data, base_dir="."):
    (play,) = parse_playbook(data, base_dir)
    (task,) = play.tasks
    return task


class TestTaskForms:
    """Tests for the three task spellings."""

    def test_explicit(self):
        task = only_task([{"name": "pkgs", "type": "package-ensure", "parameters": {"name": ["git"]}}])
        assert (task.name, task.type, task.parameters) == ("pkgs", "package-ensure", {"name": ["git"]})

    def test_shorthand_with_alias(self):
        task = only_task([{"name": "nginx", "apt": {"name": "nginx", "update_cache": True}}])
        assert task.type == "package-ensure"
        assert task.parameters == {"name": "nginx", "update_cache": True}

    def test_fully_qualified_module_name(self):
        task = only_task([{"ansible.builtin.service": {"name": "nginx", "state": "started"}}])
        assert task.type == "service-ensure"
        assert task.name == "service-ensure"

    def test_args_are_merged(self):
        task = only_task([{"shell": "make", "args": {"chdir": "/src"}}])
        assert task.parameters == {"cmd": "make", "chdir": "/src"}

    def test_explicit_type_must_exist(self):
        with pytest.raises(UnknownTaskTypeError):
            only_task([{"type": "teleport"}])

    def test_unknown_shorthand(self):
        with pytest.raises(UnknownTaskTypeError, match="lineinfile"):
            only_task([{"lineinfile": {"path": "/x"}}])

    def test_conflicting_keys(self):
        with pytest.raises(PlaybookError, match="conflicting task keys: apt, service"):
            only_task([{"name": "both", "apt": {"name": "x"}, "service": {"name": "y"}}])

    def test_no_type(self):
        with pytest.raises(PlaybookError, match="no task type given"):
            only_task([{"name": "empty", "when": "true"}])

    def test_task_must_be_mapping(self):
        with pytest.raises(PlaybookError, match="must be a mapping"):
            parse_playbook({"tasks": ["apt: git"]})


class TestAnsibleModules:
    """Tests for translating common Ansible modules."""

    @pytest.mark.parametrize(
        "params,expected_type,expected",
        [
            (
                {"path": "/var/secrets", "state": "directory", "owner": "hng", "mode": "0755"},
                "directory-ensure",
                {"path": "/var/secrets", "owner": "hng", "mode": "0755"},
            ),
            ({"dest": "/tmp/x", "state": "absent"}, "directory-ensure", {"path": "/tmp/x", "state": "absent"}),
            (
                {"path": "/var/log/app.log", "state": "touch", "owner": "hng"},
                "file-attributes-ensure",
                {"path": "/var/log/app.log", "owner": "hng", "state": "touch"},
            ),
            (
                {"name": "/opt/app", "owner": "hng", "recurse": True},
                "file-attributes-ensure",
                {"path": "/opt/app", "owner": "hng", "recurse": True},
            ),
        ],
    )
    def test_file_states(self, params, expected_type, expected):
        task = only_task([{"file": params}])
        assert task.type == expected_type
        assert task.parameters == expected

    def test_file_link_unsupported(self):
        with pytest.raises(PlaybookError, match="unsupported state 'link'"):
            only_task([{"file": {"path": "/x", "state": "link"}}])

    def test_copy_content(self):
        task = only_task([{"copy": {"dest": "/etc/motd", "content": "hi\n", "mode": "0644"}}])
        assert task.type == "file-content-ensure"
        assert task.parameters == {"path": "/etc/motd", "content": "hi\n", "mode": "0644"}

    def test_copy_src_is_read_from_files_dir(self, tmp_path):
        (tmp_path / "files").mkdir()
        (tmp_path / "files" / "motd").write_text("from file\n")

        task = only_task([{"copy": {"src": "motd", "dest": "/etc/motd"}}], tmp_path)

        assert task.parameters == {"path": "/etc/motd", "content": "from file\n"}

    def test_copy_missing_src(self, tmp_path):
        with pytest.raises(PlaybookError, match="Local file not found: motd"):
            only_task([{"copy": {"src": "motd", "dest": "/etc/motd"}}], tmp_path)

    def test_template_src_resolved(self, tmp_path):
        (tmp_path / "templates").mkdir()
        (tmp_path / "templates" / "nginx.conf.j2").write_text("{{ port }}")

        task = only_task([{"template": {"src": "nginx.conf.j2", "dest": "/etc/nginx/nginx.conf"}}], tmp_path)

        assert task.type == "templated-file-render"
        assert task.parameters["src"] == str(tmp_path / "templates" / "nginx.conf.j2")

    def test_templated_src_left_for_later(self, tmp_path):
        task = only_task([{"template": {"src": "{{ conf }}.j2", "dest": "/etc/x"}}], tmp_path)
        assert task.parameters["src"] == "{{ conf }}.j2"

    def test_command_free_form(self):
        task = only_task([{"command": "uptime"}])
        assert (task.type, task.parameters) == ("shell-command", {"cmd": "uptime"})

    def test_shell_argv(self):
        task = only_task([{"shell": {"argv": ["echo", "hi"]}}])
        assert task.parameters == {"cmd": "echo hi"}

    def test_systemd_drops_unsupported_keys(self):
        task = only_task([{"systemd": {"name": "nginx", "state": "started", "daemon_reload": True}}])
        assert (task.type, task.parameters) == ("service-ensure", {"name": "nginx", "state": "started"})


class TestTaskAttributes:
    """Tests for loop, when, notify, become and friends."""

    def test_all_attributes(self):
        task = only_task(
            [
                {
                    "name": "dirs",
                    "file": {"path": "{{ item }}", "state": "directory"},
                    "loop": ["/a", "/b"],
                    "when": ["ready", "not skip"],
                    "notify": "restart nginx",
                    "ignore_errors": "yes",
                    "register": "dirs_result",
                    "retries": "2",
                    "idempotent": True,
                }
            ]
        )
        assert task.loop_items == ["/a", "/b"]
        assert task.condition == "(ready) and (not skip)"
        assert task.notifies == ("restart nginx",)
        assert task.ignore_errors is True
        assert task.register == "dirs_result"
        assert task.retries == 2
        assert task.idempotent is True

    def test_with_items(self):
        task = only_task([{"apt": {"name": "{{ item }}"}, "with_items": ["git", "curl"]}])
        assert task.loop_items == ["git", "curl"]

    def test_boolean_condition(self):
        assert only_task([{"command": "x", "when": False}]).condition == "false"

    def test_play_become_is_inherited(self):
        (play,) = parse_playbook({"become": True, "tasks": [{"command": "id"}, {"command": "id", "become": False}]})
        assert play.tasks[0].become == BecomeSpec(user="root")
        assert play.tasks[1].become is None

    def test_task_become_user(self):
        task = only_task([{"command": "psql", "become": "yes", "become_user": "postgres"}])
        assert task.become == BecomeSpec(user="postgres")

    def test_become_user_under_play_become(self):
        (play,) = parse_playbook({"become": True, "tasks": [{"command": "psql", "become_user": "postgres"}]})
        assert play.tasks[0].become.user == "postgres"


class TestPlays:
    """Tests for play-level structure."""

    def test_multiple_plays(self):
        plays = parse_playbook(
            [
                {"name": "web", "hosts": "webservers", "tasks": [{"command": "a"}]},
                {"name": "db", "hosts": ["db01", "db02"], "tasks": [{"command": "b"}]},
            ]
        )
        assert [(p.name, p.hosts) for p in plays] == [("web", "webservers"), ("db", "db01,db02")]

    def test_bare_task_list(self):
        (play,) = parse_playbook([{"command": "a"}, {"command": "b"}])
        assert play.hosts == "all"
        assert len(play.tasks) == 2

    def test_handlers_parsed(self):
        (play,) = parse_playbook(
            {"tasks": [{"command": "x", "notify": "restart"}], "handlers": [{"name": "restart", "service": {"name": "nginx", "state": "restarted"}}]}
        )
        assert [h.name for h in play.handlers] == ["restart"]

    def test_unknown_play_key(self):
        with pytest.raises(PlaybookError, match="unknown key\\(s\\): roles"):
            parse_playbook({"roles": ["web"], "tasks": []})

    def test_empty(self):
        with pytest.raises(PlaybookError, match="empty"):
            parse_playbook(None)

    def test_vars_files(self, tmp_path):
        write(tmp_path / "vars.yml", "app_port: 8080\napp_user: web\n")
        (play,) = parse_playbook({"vars": {"app_user": "hng"}, "vars_files": "vars.yml", "tasks": []}, tmp_path)
        assert play.vars == {"app_user": "web", "app_port": 8080}

    def test_vars_file_must_be_mapping(self, tmp_path):
        write(tmp_path / "vars.yml", "- a\n- b\n")
        with pytest.raises(PlaybookError, match="must contain a mapping"):
            parse_playbook({"vars_files": ["vars.yml"], "tasks": []}, tmp_path)


class TestLoadPlaybook:
    """Tests for reading playbooks from disk."""

    def test_load(self, tmp_path):
        path = write(
            tmp_path / "site.yml",
            """
            - name: Provision
              hosts: all
              vars:
                app_user: hng
              tasks:
                - name: Create application user
                  user: {name: "{{ app_user }}", shell: /bin/bash}
            """,
        )

        (play,) = load_playbook(path)

        assert play.source == path
        assert play.tasks[0].type == "user-ensure"
        assert play.tasks[0].parameters == {"name": "{{ app_user }}", "shell": "/bin/bash"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(PlaybookError, match="Cannot read playbook"):
            load_playbook(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path):
        path = write(tmp_path / "bad.yml", "tasks: [unclosed\n")
        with pytest.raises(PlaybookError, match="Invalid YAML"):
            load_playbook(path)
