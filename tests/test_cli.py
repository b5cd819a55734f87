"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
import logging
from decimal import Decimal
from pathlib import Path
from typing import Iterable

import pytest

import sigma_admin
from sigma_admin import cli, core_logic, data_manager
from sigma_admin.constants import EntityKind, OrderStatus, PaymentMethod, TransactionType


WRITE_COMMANDS = {
    "add-product",
    "delete-product",
    "adjust-stock",
    "add-customer",
    "create-order",
    "set-status",
    "sync",
}

READ_COMMANDS = {
    "products",
    "orders",
    "outbox",
    "report",
    "dashboard",
    "invoice",
}


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    return cli.build_parser()


@pytest.fixture
def subparsers_action(cli_parser):
    return cli_parser.add_subparsers(dest="command")


def _subcommand_parser(register) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = register(subparsers)
    spec.register(subparsers)
    return parser


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "sigma-admin"
    assert "Sigma" in (parser.description or "")


def test_build_parser_accepts_config_override(cli_parser, tmp_path):
    cli.configure_subcommands(cli_parser)
    namespace = cli_parser.parse_args(["--config", str(tmp_path / "config.ini"), "products"])
    assert namespace.config == tmp_path / "config.ini"


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
        assert callable(spec.execute)


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for name in READ_COMMANDS:
        assert name in subparsers_action.choices


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def test_register_add_product_command_configures_arguments():
    parser = _subcommand_parser(cli.register_add_product_command)
    namespace = parser.parse_args(
        ["add-product", "--name", "Áo dài", "--price", "350.000đ", "--stock", "4", "--sizes", "S,M"]
    )
    assert namespace.name == "Áo dài"
    assert namespace.price == "350.000đ"
    assert namespace.stock == 4
    assert namespace.sizes == "S,M"
    assert namespace.colors is None


def test_register_adjust_stock_command_configures_arguments():
    parser = _subcommand_parser(cli.register_adjust_stock_command)
    namespace = parser.parse_args(
        ["adjust-stock", "--product-id", "7", "--type", "IMPORT", "--quantity", "5", "--size", "M"]
    )
    assert namespace.product_id == 7
    assert namespace.type == "IMPORT"
    assert namespace.quantity == 5
    assert namespace.size == "M"
    assert namespace.color is None


def test_register_adjust_stock_command_rejects_unknown_type():
    parser = _subcommand_parser(cli.register_adjust_stock_command)
    with pytest.raises(SystemExit):
        parser.parse_args(["adjust-stock", "--product-id", "7", "--type", "LOSS", "--quantity", "5"])


def test_register_create_order_command_defaults_to_cod():
    parser = _subcommand_parser(cli.register_create_order_command)
    namespace = parser.parse_args(["create-order", "--customer-id", "CUST-1", "--product-id", "3", "--quantity", "2"])
    assert namespace.payment_method == PaymentMethod.COD.value
    assert namespace.shipping_fee == "0"
    assert namespace.ship_name is None


def test_register_set_status_command_limits_choices():
    parser = _subcommand_parser(cli.register_set_status_command)
    namespace = parser.parse_args(["set-status", "--order-id", "ORD-1-1", "--status", "SHIPPED"])
    assert namespace.status == OrderStatus.SHIPPED.value
    with pytest.raises(SystemExit):
        parser.parse_args(["set-status", "--order-id", "ORD-1-1", "--status", "LOST"])


def test_register_report_command_configures_arguments(tmp_path):
    parser = _subcommand_parser(cli.register_report_command)
    namespace = parser.parse_args(["report", "segments", "--xlsx", str(tmp_path / "s.xlsx")])
    assert namespace.kind == "segments"
    assert namespace.xlsx == tmp_path / "s.xlsx"
    assert namespace.csv is None


def test_register_sync_and_outbox_flags():
    sync_parser = _subcommand_parser(cli.register_sync_command)
    outbox_parser = _subcommand_parser(cli.register_outbox_command)
    assert sync_parser.parse_args(["sync", "--push-all"]).push_all is True
    assert outbox_parser.parse_args(["outbox"]).dead is False


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    sentinel_context = object()

    def fake_loader(path: Path | None, **options) -> object:
        assert path == config_file
        assert options == {"merge_on_read": True}
        return sentinel_context

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is sentinel_context


def test_cli_context_reads_remote_on_first_list(config_factory, fake_remote, product_factory, monkeypatch):
    """A fresh CLI context must merge with the remote API before answering."""

    bundle = config_factory(base_url="https://api.example")
    fake_remote.collections[EntityKind.PRODUCTS] = [data_manager.serialize_product(product_factory(5, stock=3))]
    monkeypatch.setattr(core_logic, "RemoteClient", lambda *_args, **_kwargs: fake_remote)

    context = cli.load_runtime_context(bundle.config_path)
    try:
        products = core_logic.list_products(context)
        core_logic.list_products(context)
    finally:
        core_logic.close_context(context)

    assert [p.id for p in products] == [5]
    assert fake_remote.fetches == [EntityKind.PRODUCTS]
    assert core_logic.get_product(context, 5).stock == 3


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    called = {}

    def execute(ctx, args):
        called["ctx"] = ctx
        return 0

    table = {"alpha": cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), execute)}
    assert cli.dispatch_command(context, argparse.Namespace(command="alpha"), table) == 0
    assert called["ctx"] is context


def test_dispatch_command_handles_unknown_commands(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(), {})


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_adjust_stock_returns_command():
    args = argparse.Namespace(product_id=3, type="EXPORT", quantity=2, note="Damaged", size=None, color="Red")

    command = cli.translate_adjust_stock(args)

    assert isinstance(command, core_logic.InventoryAdjustmentCommand)
    assert command.type == TransactionType.EXPORT
    assert command.quantity == 2
    assert command.color == "Red"


def _order_args(**overrides) -> argparse.Namespace:
    values = dict(
        product_id=1,
        quantity=2,
        payment_method="BANK_TRANSFER",
        shipping_fee="30000",
        size="M",
        color=None,
        ship_name=None,
        ship_phone=None,
        ship_address=None,
        note=None,
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def test_translate_create_order_without_shipping_override(customer_factory):
    customer = customer_factory()

    command = cli.translate_create_order(_order_args(), customer)

    assert command.customer is customer
    assert command.payment_method == PaymentMethod.BANK_TRANSFER
    assert command.shipping_fee == Decimal("30000")
    assert command.shipping is None


def test_translate_create_order_fills_shipping_gaps_from_customer(customer_factory):
    command = cli.translate_create_order(_order_args(ship_name="Tran Thi B"), customer_factory())

    assert command.shipping == core_logic.ShippingInfo(name="Tran Thi B", phone="0900000001", address="12 Hang Bac")


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_add_product_invokes_bll(context, monkeypatch, product_factory, capsys):
    called = {}

    def fake_add_product(ctx, **data):
        called["ctx"] = ctx
        called["data"] = data
        return product_factory(5, name=data["name"])

    monkeypatch.setattr(cli.core_logic, "add_product", fake_add_product)
    args = argparse.Namespace(
        name="Khăn", price="90.000đ", stock=3, sku="", category="", brand="", sizes="S, M", colors=None
    )

    assert cli.run_add_product(context, args) == 0
    assert called["ctx"] is context
    assert called["data"]["sizes"] == ("S", "M")
    assert called["data"]["colors"] == ()
    assert "Added product 5: Khăn" in capsys.readouterr().out


def test_run_delete_product_reports_unknown_id(context):
    with pytest.raises(core_logic.MissingReferenceError):
        cli.run_delete_product(context, argparse.Namespace(product_id=404))


def test_run_create_order_returns_two_on_rejection(context, seed, product_factory, customer_factory, capsys):
    seed(EntityKind.PRODUCTS, product_factory(1, stock=1))
    seed(EntityKind.CUSTOMERS, customer_factory())

    exit_code = cli.run_create_order(context, _order_args(customer_id="CUST-1", quantity=5, size=None))

    assert exit_code == 2
    assert "1" in capsys.readouterr().out
    assert core_logic.get_product(context, 1).stock == 1


def test_run_create_order_prints_order_total(context, seed, product_factory, customer_factory, capsys):
    seed(EntityKind.PRODUCTS, product_factory(1, stock=4))
    seed(EntityKind.CUSTOMERS, customer_factory())

    exit_code = cli.run_create_order(
        context, _order_args(customer_id="CUST-1", quantity=2, size=None, shipping_fee="0")
    )

    assert exit_code == 0
    assert "700.000đ" in capsys.readouterr().out


def test_run_orders_filters_by_status(context, seed, order_factory, capsys):
    seed(
        EntityKind.ORDERS,
        order_factory("ORD-1-1"),
        order_factory("ORD-2-1", status=OrderStatus.SHIPPED, timestamp=1_700_000_100_000),
    )

    assert cli.run_orders(context, argparse.Namespace(status="SHIPPED", customer_id=None)) == 0

    out = capsys.readouterr().out
    assert "ORD-2-1" in out
    assert "ORD-1-1" not in out


def test_run_sync_skips_when_offline(offline_context, capsys):
    assert cli.run_sync(offline_context, argparse.Namespace(push_all=True)) == 0
    assert "not configured" in capsys.readouterr().out


def test_run_sync_pushes_everything(context, seed, product_factory, fake_remote, capsys):
    seed(EntityKind.PRODUCTS, product_factory(1))

    assert cli.run_sync(context, argparse.Namespace(push_all=True)) == 0

    assert fake_remote.pushed_ids(EntityKind.PRODUCTS) == ["1"]
    assert "Sent 1" in capsys.readouterr().out


def test_run_report_writes_requested_exports(context, seed, product_factory, tmp_path, capsys):
    seed(EntityKind.PRODUCTS, product_factory(1, stock=2))
    args = argparse.Namespace(kind="inventory", csv=tmp_path / "inv.csv", xlsx=tmp_path / "inv.xlsx")

    assert cli.run_report(context, args) == 0

    assert (tmp_path / "inv.csv").read_text(encoding="utf-8-sig").startswith("id,sku,name,imported,exported,stock")
    assert (tmp_path / "inv.xlsx").exists()
    assert capsys.readouterr().out == ""


def test_run_invoice_writes_file(context, seed, order_factory, tmp_path):
    seed(EntityKind.ORDERS, order_factory("ORD-9-9"))
    target = tmp_path / "invoices" / "ORD-9-9.html"

    assert cli.run_invoice(context, argparse.Namespace(order_id="ORD-9-9", output=target)) == 0
    assert "Invoice ORD-9-9" in target.read_text(encoding="utf-8")


def test_build_report_rows_rejects_unknown_kind(context):
    with pytest.raises(KeyError):
        cli.build_report_rows(context, "profit")


# ---------------------------------------------------------------------------
# Error handling and outbox flushing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.InsufficientStockError(1, 3), 2),
        (FileNotFoundError("missing"), 3),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should convert exceptions into exit codes."""

    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_flush_outbox_drains_pending_writes(context, fake_remote):
    context.outbox.enqueue_push(EntityKind.PRODUCTS, {"id": 1})

    cli.flush_outbox(context)

    assert fake_remote.pushed_ids(EntityKind.PRODUCTS) == ["1"]
    assert context.outbox.pending() == []


def test_flush_outbox_keeps_failures_queued(context, fake_remote, caplog):
    fake_remote.accept_writes = False
    context.outbox.enqueue_push(EntityKind.PRODUCTS, {"id": 1})
    caplog.set_level("WARNING")

    cli.flush_outbox(context)

    assert len(context.outbox.pending()) == 1
    assert any("could not reach" in record.getMessage() for record in caplog.records)


def test_flush_outbox_is_silent_when_offline(offline_context, monkeypatch):
    offline_context.outbox.enqueue_push(EntityKind.PRODUCTS, {"id": 1})
    monkeypatch.setattr(
        offline_context.outbox, "drain", lambda: (_ for _ in ()).throw(AssertionError("should not drain"))
    )

    cli.flush_outbox(offline_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, context):
    """main should execute the command parsed from argv and flush the outbox."""

    parser = _stub_parser(command="products")
    command_table = {"products": cli.CommandSpec("products", "help", lambda _: parser, lambda *_: 0)}

    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    called = {}

    def fake_dispatch(ctx, args, table) -> int:
        called["context"] = ctx
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "flush_outbox", lambda ctx: called.setdefault("flushed", ctx))

    assert cli.main(["products"]) == 0
    assert called["context"] is context
    assert called["flushed"] is context
    assert called["args"].command == "products"


def test_main_handles_bll_errors(monkeypatch, context):
    """main should surface business rule violations as non-zero exits."""

    parser = _stub_parser(command="create-order")
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: {})
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    monkeypatch.setattr(cli, "flush_outbox", lambda _: (_ for _ in ()).throw(AssertionError("should not flush")))

    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    assert cli.main(["create-order"]) == 99
    assert isinstance(handled["error"], core_logic.BusinessRuleViolation)


def test_main_closes_context_after_failure(monkeypatch, context):
    parser = _stub_parser(command="set-status")
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: {})
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)
    monkeypatch.setattr(cli, "dispatch_command", lambda *_: 2)
    monkeypatch.setattr(cli, "flush_outbox", lambda _: (_ for _ in ()).throw(AssertionError("should not flush")))
    closed = []
    monkeypatch.setattr(cli.core_logic, "close_context", closed.append)

    assert cli.main(["set-status"]) == 2
    assert closed == [context]


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "absent.ini"), "products"]) == 3


def test_main_runs_against_real_config(config_factory, capsys):
    bundle = config_factory()

    exit_code = cli.main(
        ["--config", str(bundle.config_path), "add-customer", "--name", "Le Van C", "--phone", "0911"]
    )

    assert exit_code == 0
    assert "Added customer CUST-" in capsys.readouterr().out
    assert (bundle.data_dir / "sigma_vie_customers.json").exists()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command, config=None)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def test_verbose_flag_raises_console_level(monkeypatch, context):
    levels = []
    monkeypatch.setattr(cli, "set_console_level", levels.append)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)

    assert cli.main(["-v", "products"]) == 0
    assert levels == ["INFO"]


def test_set_console_level_only_changes_stderr_handler():
    console = next(h for h in sigma_admin.log.handlers if h.get_name() == "sigma_admin.console")
    others = {h: h.level for h in sigma_admin.log.handlers if h is not console}
    original = console.level
    try:
        sigma_admin.set_console_level("INFO")
        assert console.level == logging.INFO
        assert {h: h.level for h in others} == others
    finally:
        console.setLevel(original)
