import asyncio
import sys

from dataclasses import dataclass
from typing import Annotated

import cappa
import granian

from cappa.output import error_format
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from energy_backend import __version__
from energy_backend.common.log import setup_logging
from energy_backend.core.conf import settings
from energy_backend.database.db import async_db_session, async_engine, create_tables, drop_tables
from energy_backend.src.billing.container import build_billing_services
from energy_backend.utils.console import console
from energy_backend.utils.timezone import timezone

output_help = '\nFor more information, try "[cyan]--help[/]"'


async def init(rebuild: bool) -> None:  # noqa: FBT001
    panel_content = Text()
    panel_content.append('Database configuration', style='bold green')
    panel_content.append('\n\n  • Type: ')
    panel_content.append(f'{settings.DATABASE_TYPE}', style='yellow')
    panel_content.append('\n  • Database: ')
    panel_content.append(
        f'{settings.DATABASE_SQLITE_PATH if settings.DATABASE_TYPE == "sqlite" else settings.DATABASE_SCHEMA}',
        style='yellow',
    )
    panel_content.append('\n\nRazorpay', style='bold green')
    panel_content.append('\n\n  • Configured: ')
    panel_content.append(f'{settings.razorpay_configured}', style='yellow' if settings.razorpay_configured else 'red')
    panel_content.append('\n  • Webhook secret: ')
    panel_content.append('set' if settings.RAZORPAY_WEBHOOK_SECRET else 'missing', style='yellow')

    console.print(Panel(panel_content, title=f'energy-backend v{__version__} initialization', border_style='cyan', padding=(1, 2)))

    if rebuild:
        ok = Prompt.ask('Drop and recreate all billing tables? Existing bills and payments are lost', choices=['y', 'n'], default='n')
        if ok.lower() != 'y':
            console.print('Initialization cancelled', style='yellow')
            return

    console.print('Initializing...', style='white')
    try:
        if rebuild:
            console.print('Dropping database tables', style='white')
            await drop_tables()
        console.print('Creating database tables', style='white')
        await create_tables()
    except Exception as e:
        raise cappa.Exit(f'Initialization failed: {e}', code=1)
    finally:
        await async_engine.dispose()
    console.print('Initialization completed', style='green')
    console.print('\nTry [bold cyan]energy-backend run[/bold cyan] to start the service')


def run(host: str, port: int, reload: bool, workers: int) -> None:  # noqa: FBT001
    url = f'http://{host}:{port}'
    docs_url = url + settings.FASTAPI_DOCS_URL
    redoc_url = url + settings.FASTAPI_REDOC_URL

    panel_content = Text()
    panel_content.append('Python version:', style='bold cyan')
    panel_content.append(f'{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}', style='white')

    panel_content.append('\nAPI request address: ', style='bold cyan')
    panel_content.append(f'{url}{settings.FASTAPI_API_V1_PATH}', style='blue')

    panel_content.append('\n\nEnvironment mode: ', style='bold green')
    env_style = 'yellow' if settings.ENVIRONMENT == 'dev' else 'green'
    panel_content.append(f'{settings.ENVIRONMENT.upper()}', style=env_style)

    panel_content.append('\nRazorpay configured: ', style='bold green')
    panel_content.append(f'{settings.razorpay_configured}', style='white')

    panel_content.append('\nReconciliation sweep: ', style='bold green')
    interval = settings.BILLING_RECONCILIATION_INTERVAL_SECONDS
    panel_content.append(f'every {interval}s' if interval > 0 else 'disabled (use `energy-backend reconcile`)', style='white')

    if settings.ENVIRONMENT == 'dev':
        panel_content.append(f'\n\n📖 Swagger docs: {docs_url}', style='bold magenta')
        panel_content.append(f'\n📚 Redoc docs: {redoc_url}', style='bold magenta')

    console.print(Panel(panel_content, title=f'energy-backend v{__version__}', border_style='purple', padding=(1, 2)))
    granian.Granian(
        target='energy_backend.main:app',
        interface='asgi',
        address=host,
        port=port,
        reload=not reload,
        workers=workers,
    ).serve()


async def reconcile() -> None:
    setup_logging()
    services = build_billing_services(settings, async_db_session)
    try:
        results = await services.reconciliation.run_full_reconciliation()
    finally:
        await async_engine.dispose()

    unreflected = results['unreflected_payments']
    duplicates = results['duplicate_check']['duplicates_found']
    totals = results['total_check']['discrepancies_found']

    table = Table(show_header=True, header_style='bold magenta', title=f'Reconciliation {timezone.to_str(timezone.now())}')
    table.add_column('Check', style='cyan', no_wrap=True)
    table.add_column('Result', style='green')
    table.add_row(
        'Unreflected payments',
        f'checked={unreflected["checked"]} fixed={unreflected["fixed"]} '
        f'already_paid={unreflected["already_paid"]} failed={unreflected["failed"]}',
    )
    table.add_row('Overdue bills', str(results['overdue_bills']['marked_overdue']))
    table.add_row('Duplicate settlements', str(len(duplicates)))
    table.add_row('Total mismatches', str(len(totals)))
    console.print(table)

    for dup in duplicates:
        console.print(
            f'[red]Bill {dup["bill_id"]} charged {dup["payment_count"]} times: '
            f'{", ".join(p for p in dup["razorpay_payment_ids"] if p)}[/]'
        )
    errors = unreflected['errors'] + results['overdue_bills']['errors']
    errors += results['duplicate_check']['errors'] + results['total_check']['errors']
    for error in errors:
        console.print(f'[red]{error}[/]')
    if errors:
        raise cappa.Exit('Reconciliation finished with errors', code=1)


async def retry_payment(payment_id: str) -> None:
    setup_logging()
    services = build_billing_services(settings, async_db_session)
    try:
        result = await services.reconciliation.retry_bill_update(payment_id)
    finally:
        await async_engine.dispose()
    if not result['success']:
        raise cappa.Exit(result['error'], code=1)
    console.print(f'Payment {payment_id}: {result["action"]} (bill {result["bill_id"]})', style='bold green')


@cappa.command(help='Create the billing tables', default_long=True)
@dataclass
class InitDb:
    rebuild: Annotated[
        bool,
        cappa.Arg(default=False, help='Drop existing tables first'),
    ]

    async def __call__(self) -> None:
        await init(self.rebuild)


@cappa.command(help='Run API service', default_long=True)
@dataclass
class Run:
    host: Annotated[
        str,
        cappa.Arg(
            default='127.0.0.1',
            help='提供服务的主机 IP 地址，对于本地开发，请使用 `127.0.0.1`。'
            '要启用公共访问，例如在局域网中，请使用 `0.0.0.0`',
        ),
    ]
    port: Annotated[
        int,
        cappa.Arg(default=8000, help='提供服务的主机端口号'),
    ]
    no_reload: Annotated[
        bool,
        cappa.Arg(default=False, help='禁用在（代码）文件更改时自动重新加载服务器'),
    ]
    workers: Annotated[
        int,
        cappa.Arg(default=1, help='使用多个工作进程，必须与 `--no-reload` 同时使用'),
    ]

    def __call__(self) -> None:
        run(host=self.host, port=self.port, reload=self.no_reload, workers=self.workers)


@cappa.command(help='Run one full reconciliation pass', default_long=True)
@dataclass
class Reconcile:
    async def __call__(self) -> None:
        await reconcile()


@cappa.command(help='Retry the bill update for one recorded payment', default_long=True)
@dataclass
class Retry:
    payment_id: Annotated[
        str,
        cappa.Arg(help='Internal payment id or Razorpay payment id'),
    ]

    async def __call__(self) -> None:
        await retry_payment(self.payment_id)


@cappa.command(help='An efficient energy-backend command line interface', default_long=True)
@dataclass
class EnergyCli:
    subcmd: cappa.Subcommands[InitDb | Run | Reconcile | Retry | None] = None


def main() -> None:
    output = cappa.Output(error_format=f'{error_format}\n{output_help}')
    asyncio.run(cappa.invoke_async(EnergyCli, version=__version__, output=output))
