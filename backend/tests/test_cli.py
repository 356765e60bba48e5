"""
CLI command tests.
"""

from stockflow.models import Product, User


def test_create_user_with_legacy_role(app, db_session, regional):
    runner = app.test_cli_runner()
    result = runner.invoke(args=[
        "users", "create",
        "--username", "dealer9",
        "--email", "dealer9@stockflow.test",
        "--password", "Password123!",
        "--role", "dealer",
        "--parent-id", str(regional.id),
    ])

    assert result.exit_code == 0, result.output
    assert "PASS" in result.output
    assert db_session.query(User).filter_by(username="dealer9").one().role == "distributor"


def test_create_user_rejects_orphan(app, db_session):
    runner = app.test_cli_runner()
    result = runner.invoke(args=[
        "users", "create",
        "--username", "agent9",
        "--email", "agent9@stockflow.test",
        "--password", "Password123!",
        "--role", "salesman",
    ])

    assert result.exit_code == 1
    assert "FAIL" in result.output


def test_products_create_and_restock(app, db_session):
    runner = app.test_cli_runner()
    result = runner.invoke(args=[
        "products", "create", "--name", "Seed Mix", "--packet-price-cents", "150",
        "--packets-per-unit", "10", "--stock", "200",
    ])
    assert result.exit_code == 0, result.output

    product = db_session.query(Product).filter_by(name="Seed Mix").one()
    result = runner.invoke(args=["products", "restock", str(product.id), "--units", "50"])
    assert result.exit_code == 0, result.output

    db_session.expire_all()
    assert db_session.get(Product, product.id).stock_units == 250


def test_ledger_check_passes(app, db_session, approved_lot):
    approved_lot(10)
    result = app.test_cli_runner().invoke(args=["ledger", "check"])
    assert result.exit_code == 0
    assert "Ledger is consistent" in result.output


def test_ledger_check_fails_on_violation(app, db_session, approved_lot):
    lot = approved_lot(10)
    lot.available_units = 3
    db_session.commit()

    result = app.test_cli_runner().invoke(args=["ledger", "check"])
    assert result.exit_code == 1
    assert f"lot {lot.id}" in result.output


def test_ledger_lots(app, db_session, distributor, approved_lot):
    approved_lot(10)
    result = app.test_cli_runner().invoke(args=["ledger", "lots", "--distributor-id", str(distributor.id)])
    assert result.exit_code == 0
    assert "Available" in result.output
