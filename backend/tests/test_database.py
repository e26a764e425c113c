from portfolio.core.database import engine_connect_args


def test_sqlite_urls_get_no_driver_arguments():
    assert engine_connect_args("sqlite+aiosqlite:///:memory:") == {}


def test_postgres_urls_disable_statement_cache():
    assert engine_connect_args("postgresql+asyncpg://user:pw@localhost:5432/portfolio") == {
        "statement_cache_size": 0,
        "ssl": False,
    }


def test_supabase_pooler_requires_ssl():
    url = "postgresql+asyncpg://user:pw@aws-0-eu-west-1.pooler.supabase.com:6543/postgres"

    assert engine_connect_args(url)["ssl"] == "require"
