"""Tests for redis.conf parsing and rendering."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest

from redisbroker.redisconf import (
    BUILTIN_TEMPLATE,
    RedisConf,
    RedisConfError,
    copy_with_instance_additions,
)


def test_parse_skips_comments_and_keeps_order() -> None:
    """Comments and blank lines are dropped; repeated directives are kept."""
    document = RedisConf.parse(
        "# comment\n"
        "\n"
        "Port 6379\n"
        "save 900 1\n"
        "save 300 10\n"
        'requirepass ""\n'
    )

    assert [directive.name for directive in document] == ["port", "save", "save", "requirepass"]
    assert document.get("port") == "6379"
    assert document.get_all("save") == ["900 1", "300 10"]
    assert document.get("requirepass") == ""
    assert "PORT" in document
    assert "maxmemory" not in document
    assert document.get("maxmemory", "none") == "none"


def test_set_replaces_first_occurrence_or_appends() -> None:
    """`set` updates in place and appends unknown directives."""
    document = RedisConf.from_pairs([("save", "900 1"), ("save", "60 10000")])

    document.set("save", "1 1")
    document.set("port", "7000")

    assert document.get_all("save") == ["1 1", "60 10000"]
    assert document.render().splitlines()[-1] == "port 7000"


def test_render_quotes_empty_values() -> None:
    """Empty values render as an empty quoted argument."""
    document = RedisConf.from_pairs([("requirepass", "")])

    assert document.render() == 'requirepass ""\n'


def test_save_writes_atomically_with_mode(tmp_path: Path) -> None:
    """Documents are written with restrictive permissions and no temp leftovers."""
    target = tmp_path / "redis.conf"

    RedisConf.from_pairs([("port", "7000")]).save(target)

    assert target.read_text(encoding="utf-8") == "port 7000\n"
    assert stat.S_IMODE(target.stat().st_mode) == 0o640
    assert [path.name for path in tmp_path.iterdir()] == ["redis.conf"]


def test_copy_with_instance_additions_uses_builtin_template(tmp_path: Path) -> None:
    """Without a template the built-in defaults are extended with instance values."""
    target = tmp_path / "redis.conf"

    copy_with_instance_additions(
        None, target, instance_id="alpha", port=32768, password="secret"
    )

    document = RedisConf.load(target)
    for name, value in BUILTIN_TEMPLATE:
        assert value in document.get_all(name)
    assert document.get("syslog-ident") == "redis-server-alpha"
    assert document.get("port") == "32768"
    assert document.get("requirepass") == "secret"


def test_copy_with_instance_additions_overrides_template_values(tmp_path: Path) -> None:
    """Template values for instance directives are replaced, others kept."""
    template = tmp_path / "template.conf"
    template.write_text("port 6379\nmaxmemory 64mb\nrequirepass changeme\n", encoding="utf-8")
    target = tmp_path / "redis.conf"

    copy_with_instance_additions(
        template, target, instance_id="beta", port=32769, password="pw"
    )

    document = RedisConf.load(target)
    assert document.get_all("port") == ["32769"]
    assert document.get("maxmemory") == "64mb"
    assert document.get("requirepass") == "pw"
    assert template.read_text(encoding="utf-8").startswith("port 6379")


def test_copy_with_missing_template_raises(tmp_path: Path) -> None:
    """An unreadable template raises RedisConfError."""
    with pytest.raises(RedisConfError, match="template"):
        copy_with_instance_additions(
            tmp_path / "missing.conf",
            tmp_path / "redis.conf",
            instance_id="alpha",
            port=1,
            password="pw",
        )
