"""Tests for the reconciliation CLI."""

import pytest

from genpool.cli.reconcile import async_main, parse_args


def test_parse_args_defaults():
    args = parse_args([])

    assert not args.dry_run
    assert not args.skip_tokens
    assert not args.verbose


def test_parse_args_flags():
    args = parse_args(["--dry-run", "--skip-tokens", "-v"])

    assert args.dry_run
    assert args.skip_tokens
    assert args.verbose


@pytest.mark.asyncio
async def test_requires_postgres_store(monkeypatch, capsys):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("STORE_BACKEND", "in_memory")

    exit_code = await async_main([])

    assert exit_code == 1
    assert "STORE_BACKEND=postgres" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_dry_run_against_postgres(monkeypatch, capsys, postgres_container, uow_factory):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("STORE_BACKEND", "postgres")
    monkeypatch.setenv("DATABASE_URL", postgres_container.get_connection_url(driver="psycopg"))

    exit_code = await async_main(["--dry-run"])

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "Reconciliation Summary" in output
    assert "[DRY RUN]" in output


def test_help_states_offline_token_sweep_scope(capsys):
    with pytest.raises(SystemExit):
        parse_args(["--help"])

    help_text = " ".join(capsys.readouterr().out.split())
    assert "offline sweeps apply TOKEN_MAX_REQUESTS only" in help_text
