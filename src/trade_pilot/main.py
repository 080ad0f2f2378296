"""CLI 入口模块 - Trade Pilot 命令行接口。"""

import sys
import time
from datetime import datetime
from pathlib import Path
from typing import NoReturn

import click

from trade_pilot import __version__
from trade_pilot.ai.cache import JsonFileCacheStore, MemoryCacheStore, RecommendationCache
from trade_pilot.ai.quota import QuotaTracker
from trade_pilot.bot.factory import build_engine, paper_state_path
from trade_pilot.config import Settings, get_settings
from trade_pilot.errors import PortfolioUnreachable
from trade_pilot.exec.paper import PaperPortfolio
from trade_pilot.journal.store import JournalStore
from trade_pilot.types import BotState
from trade_pilot.utils.logging import get_logger, setup_logging


def _require_config(settings: Settings) -> None:
    """缺少必要配置时退出。"""
    missing = settings.validate_for_run()
    if missing:
        get_logger("trade_pilot.main").error(
            "missing_required_config",
            missing_keys=missing,
            hint="请在 .env 文件中配置必要的 API 密钥",
        )
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Trade Pilot - AI 辅助的股票纸交易机器人。

    定时扫描自选股，获取模型推荐，在风控约束下排队并模拟执行交易。
    """
    if version:
        click.echo(f"trade-pilot version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option(
    "--force-refresh",
    is_flag=True,
    default=False,
    help="忽略今日缓存，重新生成推荐",
)
@click.option(
    "--no-execute",
    is_flag=True,
    default=False,
    help="只生成决策，不执行排队交易（未执行的交易不跨进程保留）",
)
def once(force_refresh: bool, no_execute: bool) -> None:
    """执行单次扫描。

    检查止损止盈 → 获取今日推荐 → 决策 → 执行到期交易
    """
    setup_logging()
    logger = get_logger("trade_pilot.main")
    settings = get_settings()
    _require_config(settings)

    logger.info(
        "starting_single_run",
        force_refresh=force_refresh,
        no_execute=no_execute,
        timestamp=datetime.now().isoformat(),
    )

    try:
        engine = build_engine(settings, run_background_tasks=False)
        engine.start()
        report = engine.run_scan_cycle(force_refresh=force_refresh)
        executed = [] if no_execute else engine.drain_queue()
        final_state = engine.status().state
        if final_state == BotState.RUNNING:
            engine.stop()
        logger.info(
            "run_completed",
            status=report.status,
            elapsed_ms=report.elapsed_ms,
            decisions=len(report.decisions),
            exit_targets=len(report.exit_targets),
            executed=len(executed),
            warnings=report.warnings,
        )
        if final_state == BotState.ERROR:
            sys.exit(1)

    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except PortfolioUnreachable as e:
        logger.error("portfolio_unreachable", error=str(e))
        sys.exit(1)


@cli.command()
@click.option(
    "--poll-sec",
    type=int,
    default=5,
    help="状态检查间隔（秒）",
)
def run(poll_sec: int) -> NoReturn:
    """启动自动交易机器人。

    扫描与执行在后台定时运行，使用 Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("trade_pilot.main")
    settings = get_settings()
    _require_config(settings)

    engine = build_engine(settings)
    engine.start()
    logger.info(
        "bot_started",
        scan_interval_min=settings.scan_interval_min,
        drain_interval_sec=settings.drain_interval_sec,
        watchlist=settings.watchlist,
    )

    try:
        while True:
            time.sleep(poll_sec)
            current = engine.status()
            if current.state == BotState.ERROR:
                # ERROR 需要人工确认，不自动恢复
                logger.error("bot_halted", error=current.error_message)
                engine.emergency_stop("halted after error")
                sys.exit(1)

    except KeyboardInterrupt:
        engine.stop()
        performance = engine.performance()
        logger.info(
            "bot_stopped",
            message="User stopped bot",
            total_trades=performance.total_automated_trades,
            success_rate=round(performance.success_rate, 1),
        )
        sys.exit(0)


@cli.command()
@click.option("--decisions", "-n", type=int, default=10, help="显示最近的决策数")
def status(decisions: int) -> None:
    """显示配置摘要、纸交易账户和最近决策。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Trade Pilot - Status")
    click.echo("=" * 50)
    click.echo()

    # 模型服务配置
    click.echo("[Providers]")
    for provider in settings.provider_priority:
        configured = "[OK] Configured" if settings.api_key_for(provider) else "[--] Not configured"
        preferred = " (preferred)" if provider == settings.preferred_provider else ""
        click.echo(f"   {provider.value}: {configured}{preferred}")
    finnhub_status = "[OK] Configured" if settings.finnhub_api_key else "[--] Not configured"
    click.echo(f"   finnhub: {finnhub_status}")
    click.echo()

    # 决策与风控参数
    click.echo("[Trading Rules]")
    click.echo(f"   Scan interval: {settings.scan_interval_min} min")
    click.echo(f"   Min confidence: {settings.min_confidence:.0f}")
    click.echo(f"   Risk levels: {', '.join(settings.allowed_risk_levels)}")
    click.echo(f"   Daily caps: {settings.max_daily_trades} trades / ${settings.max_daily_amount:,.2f}")
    click.echo(f"   Stop loss / take profit: {settings.stop_loss_pct}% / {settings.take_profit_pct}%")
    click.echo(f"   Max position: {settings.max_position_size_pct}%")
    click.echo(f"   Max risk per trade: {settings.max_risk_per_trade_pct}%")
    click.echo()

    # 纸交易账户
    click.echo("[Paper Portfolio]")
    try:
        portfolio = PaperPortfolio(paper_state_path(settings), initial_cash=settings.initial_cash)
        snapshot = portfolio.snapshot()
        click.echo(f"   Cash: ${snapshot.cash_balance:,.2f}")
        click.echo(f"   Total value: ${snapshot.total_value:,.2f}")
        for holding in snapshot.holdings.values():
            click.echo(
                f"   {holding.symbol}: {holding.quantity} @ ${holding.average_price:,.2f}"
                f" (last ${holding.current_price:,.2f})"
            )
    except PortfolioUnreachable as e:
        click.echo(f"   [ERROR] {e}")
    click.echo()

    # 推荐缓存
    click.echo("[Recommendation Cache]")
    store = (
        JsonFileCacheStore(settings.cache_file)
        if settings.cache_file is not None
        else MemoryCacheStore()
    )
    click.echo(f"   {RecommendationCache(store).status_message()}")
    click.echo()

    # 最近决策
    click.echo("[Recent Decisions]")
    rows = []
    if settings.journal_dir.exists():
        rows = JournalStore(settings.journal_dir).load_recent(decisions, event_type="decision")
    if not rows:
        click.echo("   (none)")
    for row in rows:
        payload = row.get("payload", {})
        click.echo(
            f"   {row.get('timestamp', '')[:19]} {payload.get('symbol', '?'):<6}"
            f" {payload.get('decision', '?'):<13} {payload.get('reason', '')}"
        )

    click.echo()
    click.echo("=" * 50)


@cli.command()
def quota() -> None:
    """显示各模型服务的每日配额。"""
    setup_logging()
    settings = get_settings()
    tracker = QuotaTracker(settings.daily_limits(), priority=settings.provider_priority)

    click.echo("[Daily Quotas]")
    for provider, usage in tracker.all_usage().items():
        configured = "" if settings.api_key_for(provider) else " (not configured)"
        click.echo(
            f"   {provider.value:<7} {usage.used}/{usage.limit}"
            f" remaining {usage.remaining}, resets {usage.reset_at.isoformat()}{configured}"
        )
    best = tracker.best_available(settings.preferred_provider)
    click.echo()
    click.echo(f"   Next provider: {best.value if best else 'none'}")


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("trade_pilot.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("numpy", "Numerical computing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("apscheduler", "Task scheduling"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    missing = get_settings().validate_for_run()
    for key in missing:
        click.echo(f"  [WARN] {key} not configured")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok, missing_config=missing)


# 支持 python -m trade_pilot.main 调用
if __name__ == "__main__":
    cli()
