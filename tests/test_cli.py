"""Tests for the branchoff CLI."""

import asyncio
import shutil
import subprocess
import sys
from urllib.parse import parse_qs

import httpx
import pytest

from branchoff.__main__ import main
from branchoff.registry import EcosystemRegistry

URI = "https://github.com/acme/shop"


@pytest.fixture
def server(monkeypatch):
    """Route the CLI's httpx client to an in-process handler."""
    seen = []
    responses = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responses.get(
            request.url.path, httpx.Response(303, headers={"location": "/ecosystem"})
        )

    real_client = httpx.Client
    monkeypatch.setattr(
        httpx,
        "Client",
        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
    )
    return seen, responses


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["branchoff", *argv])
    main()


class TestRequestCommands:
    def test_deploy(self, server, monkeypatch, capsys):
        seen, _ = server
        _run(monkeypatch, "deploy", URI, "feature-x", "--scale", "2", "--update")

        (request,) = seen
        assert request.method == "POST"
        assert request.url.path == "/deploy"
        assert parse_qs(request.content.decode()) == {
            "uri": [URI],
            "branch": ["feature-x"],
            "scale": ["2"],
            "update": ["true"],
        }
        assert "deploy submitted" in capsys.readouterr().out

    def test_destroy_without_branch(self, server, monkeypatch):
        seen, _ = server
        _run(monkeypatch, "destroy", URI, "--mode", "local")

        assert seen[0].url.path == "/destroy"
        assert parse_qs(seen[0].content.decode()) == {"uri": [URI], "mode": ["local"]}

    def test_ecosystem(self, server, monkeypatch, capsys):
        _, responses = server
        responses["/ecosystem"] = httpx.Response(200, json={"shop-main-normal-1": {}})

        _run(monkeypatch, "ecosystem", "--server", "http://branchoff.local:9000/")

        assert "shop-main-normal-1" in capsys.readouterr().out

    def test_server_error_exits_nonzero(self, server, monkeypatch):
        _, responses = server
        responses["/deploy"] = httpx.Response(400, json={"detail": "Uri, branch not provided"})

        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, "deploy", URI)
        assert exc.value.code == 1

    def test_no_command_prints_help(self, monkeypatch):
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch)
        assert exc.value.code == 1


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestIgnite:
    @pytest.fixture
    def checkout(self, tmp_path, monkeypatch):
        repo = tmp_path / "shop"
        repo.mkdir()
        subprocess.run(["git", "init", "-q", "-b", "feature-x"], cwd=repo, check=True)
        subprocess.run(["git", "remote", "add", "origin", URI + ".git"], cwd=repo, check=True)
        monkeypatch.chdir(repo)
        monkeypatch.delenv("BRANCHOFF_CONFIG", raising=False)
        monkeypatch.setenv("BRANCHOFF_DATA_DIR", str(tmp_path / "data"))
        return repo

    def test_runs_main_and_registers_local_context(self, checkout, tmp_path, monkeypatch):
        (checkout / "branchoff.yaml").write_text('main: test "$BRANCHOFF_MODE" = local && exit 7\n')

        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, "ignite")
        assert exc.value.code == 7

        async def snapshot():
            reg = EcosystemRegistry(str(tmp_path / "data" / "ecosystem.db"))
            await reg.initialize()
            try:
                return await reg.list_all()
            finally:
                await reg.close()

        (ctx,) = asyncio.run(snapshot()).values()
        assert ctx.uri == URI
        assert ctx.branch == "feature-x"
        assert ctx.is_local
        assert ctx.dir == str(checkout)

    def test_missing_main(self, checkout, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, "ignite")
        assert exc.value.code == 1
        assert "no main command" in capsys.readouterr().err
