# spend_engine/cli.py
import json
import logging
import os
from pathlib import Path

import click

from spend_engine.config import CONFIG_PATH, load_config, save_config
from spend_engine.database import (
    create_category,
    delete_category,
    list_categories,
    list_uploads,
    update_category,
)
from spend_engine.errors import SpendEngineError
from spend_engine.exchange import client_from_config
from spend_engine.importer import ImportService, UploadedFile
from spend_engine.loaders import supported_banks
from spend_engine.rules import apply_rules, create_rule, delete_rule, list_rules, update_rule
from spend_engine.stats import get_stats

logger = logging.getLogger(__name__)


class EngineGroup(click.Group):
    """Click group that reports engine errors as plain CLI failures."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except SpendEngineError as exc:
            raise click.ClickException(f"{exc.code}: {exc.message}") from exc


def _key_value(values, option):
    pairs = {}
    for value in values:
        if "=" not in value:
            raise click.BadParameter(f"expected KEY=VALUE, got '{value}'", param_hint=option)
        key, _, rest = value.partition("=")
        pairs[key.strip()] = rest.strip()
    return pairs


@click.group(cls=EngineGroup)
@click.option(
    '--config', 'config_path',
    default=str(CONFIG_PATH),
    type=click.Path(dir_okay=False),
    help='Path to config.yaml (defaults apply when missing)'
)
@click.option(
    '--db', 'db_path',
    default=None,
    type=click.Path(dir_okay=False),
    help='SQLite database file (overrides config)'
)
@click.pass_context
def main(ctx, config_path, db_path):
    """Import bank statements, categorize them with keyword rules, and report totals."""
    logging.basicConfig(
        level=os.environ.get("SPENDBOARD_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    try:
        cfg = load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc))
    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = config_path
    ctx.obj["db_path"] = db_path or cfg["db_path"]


@main.command("init-config")
@click.option('--force', is_flag=True, default=False, help='Overwrite an existing file')
@click.pass_context
def init_config(ctx, force):
    """Write the effective configuration to the --config path."""
    path = Path(ctx.obj["config_path"])
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite)")
    save_config(ctx.obj["config"], path)
    click.echo(f"Wrote {path}")


@main.command("import")
@click.option(
    '-f', '--file', 'files',
    multiple=True,
    required=True,
    help=f"Statement to import as BANK=PATH (banks: {', '.join(supported_banks())})"
)
@click.option('--rate', 'rates', multiple=True, help='Conversion rate to the base currency as CUR=RATE')
@click.option('--fetch-rates', is_flag=True, default=False, help='Look up missing rates online')
@click.option('--no-prompt', is_flag=True, default=False, help='Never ask for missing rates')
@click.pass_context
def import_cmd(ctx, files, rates, fetch_rates, no_prompt):
    """
    Parse one or more statements, show what was found, resolve conversion
    rates (explicit, then online, then prompt) and store new transactions.
    """
    cfg = ctx.obj["config"]
    base = cfg["base_currency"]
    uploads = []
    for value in files:
        if "=" not in value:
            raise click.BadParameter(f"expected BANK=PATH, got '{value}'", param_hint="--file")
        bank, _, path = value.partition("=")
        p = Path(path.strip())
        if not p.is_file():
            raise click.BadParameter(f"{path} is not a file", param_hint="--file")
        uploads.append(UploadedFile(p.name, p.read_bytes(), bank.strip()))

    service = ImportService.from_config(cfg, ctx.obj["db_path"])
    parsed = service.parse_files(uploads)

    click.echo(f"Parsed {parsed.parsed} transaction(s)")
    for bank, count in sorted(parsed.by_bank.items()):
        click.echo(f"  {bank}: {count}")
    for w in parsed.warnings:
        click.echo(f"⚠️  {w.file} row {w.row}: {w.message}", err=True)

    conversion = {k.upper(): v for k, v in _key_value(rates, "--rate").items()}
    missing = [c for c in parsed.currencies if c != base and c not in conversion]
    if missing and fetch_rates:
        fetched = client_from_config(cfg).get_rates(missing, base)
        for cur, value in fetched.items():
            click.echo(f"Using online rate 1 {cur} = {value} {base}")
        conversion.update(fetched)
        missing = [c for c in missing if c not in conversion]
    if missing and not no_prompt:
        for cur in missing:
            conversion[cur] = click.prompt(f"Rate for 1 {cur} in {base}", type=float)

    result = service.complete_import(parsed.session_id, conversion)
    click.echo(f"Imported {result.imported} transaction(s), skipped {result.duplicates} duplicate(s)")


@main.group()
def rules():
    """Manage keyword categorization rules."""


@rules.command("list")
@click.pass_context
def rules_list(ctx):
    for rule in list_rules(ctx.obj["db_path"]):
        click.echo(f"{rule.id}\t{rule.keyword}\t{rule.category_name}")


@rules.command("add")
@click.argument("keyword")
@click.argument("category_id", type=int)
@click.pass_context
def rules_add(ctx, keyword, category_id):
    rule = create_rule(ctx.obj["db_path"], keyword, category_id)
    click.echo(f"Created rule {rule.id}: '{rule.keyword}' -> {rule.category_name}")


@rules.command("update")
@click.argument("rule_id", type=int)
@click.option('--keyword', default=None)
@click.option('--category', 'category_id', type=int, default=None)
@click.pass_context
def rules_update(ctx, rule_id, keyword, category_id):
    rule = update_rule(ctx.obj["db_path"], rule_id, keyword=keyword, category_id=category_id)
    click.echo(f"Updated rule {rule.id}: '{rule.keyword}' -> {rule.category_name}")


@rules.command("delete")
@click.argument("rule_id", type=int)
@click.pass_context
def rules_delete(ctx, rule_id):
    delete_rule(ctx.obj["db_path"], rule_id)
    click.echo(f"Deleted rule {rule_id}")


@rules.command("apply")
@click.pass_context
def rules_apply(ctx):
    """Categorize uncategorized transactions using the current rules."""
    result = apply_rules(ctx.obj["db_path"], int(ctx.obj["config"]["apply_chunk_size"]))
    click.echo(
        f"Categorized {result['categorized']} of {result['total_uncategorized']} "
        f"uncategorized transaction(s)"
    )


@main.group()
def categories():
    """Manage spending categories."""


@categories.command("list")
@click.pass_context
def categories_list(ctx):
    for cat in list_categories(ctx.obj["db_path"]):
        click.echo(f"{cat.id}\t{cat.name}\t{cat.color}\t{cat.transaction_count}")


@categories.command("add")
@click.argument("name")
@click.option('--color', default="#9ca3af", show_default=True)
@click.pass_context
def categories_add(ctx, name, color):
    cat = create_category(ctx.obj["db_path"], name, color)
    click.echo(f"Created category {cat.id}: {cat.name}")


@categories.command("update")
@click.argument("category_id", type=int)
@click.option('--name', default=None)
@click.option('--color', default=None)
@click.pass_context
def categories_update(ctx, category_id, name, color):
    cat = update_category(ctx.obj["db_path"], category_id, name=name, color=color)
    click.echo(f"Updated category {cat.id}: {cat.name} {cat.color}")


@categories.command("delete")
@click.argument("category_id", type=int)
@click.pass_context
def categories_delete(ctx, category_id):
    delete_category(ctx.obj["db_path"], category_id)
    click.echo(f"Deleted category {category_id}")


@main.command()
@click.option('--start', type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option('--end', type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option('--json', 'as_json', is_flag=True, default=False, help='Print raw JSON')
@click.pass_context
def stats(ctx, start, end, as_json):
    """Show totals by category, bank and month (expenses and income)."""
    cfg = ctx.obj["config"]
    data = get_stats(
        ctx.obj["db_path"],
        start_date=start.date() if start else None,
        end_date=end.date() if end else None,
        base_currency=cfg["base_currency"],
    )
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    base = cfg["base_currency"]
    click.echo(f"{data['total_count']} transaction(s), net {data['total_amount']:.2f} {base}")
    click.echo("By category:")
    for item in data["by_category"]:
        click.echo(f"  {item['name']:<20} {item['count']:>5} {item['sum']:>14.2f}")
    click.echo("By bank:")
    for item in data["by_bank"]:
        click.echo(f"  {item['name']:<20} {item['count']:>5} {item['sum']:>14.2f}")
    click.echo("By month (expenses):")
    for item in data["by_month"]:
        click.echo(f"  {item['month']:<20} {item['count']:>5} {item['sum']:>14.2f}")
    click.echo("By month (income):")
    for item in data["income_by_month"]:
        click.echo(f"  {item['month']:<20} {item['count']:>5} {item['sum']:>14.2f}")


@main.command()
@click.option('--limit', default=20, type=int, show_default=True)
@click.pass_context
def uploads(ctx, limit):
    """Show recently imported statement files."""
    for entry in list_uploads(ctx.obj["db_path"], limit):
        click.echo(
            f"{entry['uploadDate']}\t{entry['bank']}\t{entry['filename']}\t{entry['transactionCount']}"
        )


@main.command()
@click.argument("source")
@click.argument("target", required=False)
@click.pass_context
def rate(ctx, source, target):
    """Look up the exchange rate for 1 SOURCE in TARGET (default: base currency)."""
    cfg = ctx.obj["config"]
    target = target or cfg["base_currency"]
    value = client_from_config(cfg).get_rate(source, target)
    click.echo(f"1 {source.upper()} = {value} {target.upper()}")


@main.command()
@click.option('--host', default="127.0.0.1", show_default=True)
@click.option('--port', default=8000, type=int, show_default=True)
@click.pass_context
def serve(ctx, host, port):
    """Run the JSON API."""
    from spend_engine.web import make_server

    server = make_server(ctx.obj["config"], ctx.obj["db_path"], host, port)
    click.echo(f"spendboard API running at http://{host}:{port} (db: {ctx.obj['db_path']})")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
