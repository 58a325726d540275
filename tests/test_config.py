from __future__ import annotations

import pytest
from pydantic import ValidationError as SettingsError

from waste_tracking.config import Settings


def test_dsn_adds_trust_flag_for_modern_driver():
    cfg = Settings(sql_server="db.local", sql_port=1444, sql_database="wt", sql_user="svc", sql_password="pw")
    assert cfg.build_odbc_dsn() == (
        "DRIVER={ODBC Driver 18 for SQL Server};SERVER=db.local,1444;DATABASE=wt;UID=svc;PWD=pw;"
        "TrustServerCertificate=yes;"
    )


def test_dsn_omits_trust_flag_for_legacy_driver():
    dsn = Settings().build_odbc_dsn(driver="SQL Server")
    assert dsn.startswith("DRIVER={SQL Server};")
    assert "TrustServerCertificate" not in dsn


@pytest.mark.parametrize("field,value", [("storage_backend", "sqlite"), ("fanout_backend", "kafka")])
def test_unknown_backends_are_rejected(field, value):
    with pytest.raises(SettingsError):
        Settings(**{field: value})
