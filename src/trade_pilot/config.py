"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Provider(str, Enum):
    """模型服务提供方枚举。"""

    GEMINI = "gemini"
    GROQ = "groq"
    OPENAI = "openai"


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


_DEFAULT_WATCHLIST = [
    "AAPL",
    "MSFT",
    "GOOGL",
    "AMZN",
    "NVDA",
    "META",
    "TSLA",
    "JPM",
    "UNH",
    "XOM",
]


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。百分比字段均以 0-100 表示。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 模型服务 ====================
    gemini_api_key: str = Field(default="", description="Gemini API Key")
    gemini_model: str = Field(default="gemini-1.5-flash", description="Gemini 模型名称")
    groq_api_key: str = Field(default="", description="Groq API Key")
    groq_model: str = Field(default="llama-3.1-8b-instant", description="Groq 模型名称")
    openai_api_key: str = Field(default="", description="OpenAI API Key")
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI 模型名称")
    provider_timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=120.0,
        description="模型调用硬超时（秒）",
    )
    preferred_provider: Provider = Field(
        default=Provider.GEMINI,
        description="首选模型服务",
    )
    provider_priority: list[Provider] = Field(
        default_factory=lambda: [Provider.GEMINI, Provider.GROQ, Provider.OPENAI],
        description="首选不可用时的回退顺序",
    )

    # ==================== 每日配额 ====================
    gemini_daily_limit: int = Field(default=500, ge=0, description="Gemini 每日请求上限")
    groq_daily_limit: int = Field(default=30, ge=0, description="Groq 每日请求上限")
    openai_daily_limit: int = Field(default=1000, ge=0, description="OpenAI 每日请求上限")
    max_concurrent_requests: int = Field(
        default=3,
        ge=1,
        le=16,
        description="单次扫描内并发请求上限",
    )

    # ==================== 行情数据 ====================
    finnhub_api_key: str = Field(default="", description="Finnhub API Key")
    quote_timeout: float = Field(default=10.0, gt=0.0, description="行情请求超时（秒）")
    watchlist: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_WATCHLIST),
        description="每日扫描的股票列表",
    )

    # ==================== 机器人调度 ====================
    scan_interval_min: int = Field(default=30, ge=1, le=1440, description="扫描间隔（分钟）")
    drain_interval_sec: int = Field(default=60, ge=1, description="交易队列执行间隔（秒）")
    execution_delay_sec: int = Field(
        default=0,
        ge=0,
        description="决策到执行的延迟（秒），0 表示立即",
    )
    decision_history_limit: int = Field(default=100, ge=1, description="保留的决策记录数")
    max_consecutive_execution_failures: int = Field(
        default=3,
        ge=1,
        le=20,
        description="连续异常执行失败后进入 ERROR",
    )

    # ==================== 决策阈值 ====================
    min_confidence: float = Field(default=80.0, ge=0.0, le=100.0, description="最低置信度")
    allowed_risk_levels: list[Literal["LOW", "MEDIUM", "HIGH"]] = Field(
        default_factory=lambda: ["LOW", "MEDIUM"],
        description="允许自动交易的风险等级",
    )
    max_daily_trades: int = Field(default=5, ge=0, description="每日最大交易笔数")
    max_daily_amount: float = Field(default=1000.0, ge=0.0, description="每日最大交易金额")
    top_opportunities: int = Field(default=5, ge=1, description="重点机会数量")

    # ==================== 风控参数 ====================
    stop_loss_pct: float = Field(default=15.0, gt=0.0, lt=100.0, description="止损百分比")
    take_profit_pct: float = Field(default=25.0, gt=0.0, description="止盈百分比")
    use_trailing_stop: bool = Field(default=False, description="是否启用移动止损")
    trailing_stop_pct: float = Field(default=5.0, gt=0.0, lt=100.0, description="移动止损百分比")
    max_position_size_pct: float = Field(
        default=10.0,
        gt=0.0,
        le=100.0,
        description="单只股票最大仓位（组合净值百分比）",
    )
    max_risk_per_trade_pct: float = Field(
        default=2.0,
        gt=0.0,
        le=100.0,
        description="单笔最大风险（组合净值百分比）",
    )

    # ==================== 组合风险阈值 ====================
    risk_min_positions: int = Field(
        default=3,
        ge=1,
        description="集中度评级生效的最少持仓数",
    )
    concentration_medium_pct: float = Field(
        default=20.0, ge=0.0, le=100.0, description="单一持仓占比达到该值 (%) 时为中风险"
    )
    concentration_high_pct: float = Field(
        default=30.0, ge=0.0, le=100.0, description="单一持仓占比达到该值 (%) 时为高风险"
    )
    concentration_critical_pct: float = Field(
        default=50.0, ge=0.0, le=100.0, description="单一持仓占比达到该值 (%) 时为极高风险"
    )
    diversification_medium_below: float = Field(
        default=50.0, ge=0.0, le=100.0, description="分散度评分低于该值时为中风险"
    )
    diversification_high_below: float = Field(
        default=30.0, ge=0.0, le=100.0, description="分散度评分低于该值时为高风险"
    )
    drawdown_medium_pct: float = Field(
        default=10.0, ge=0.0, description="组合回撤达到该值 (%) 时为中风险"
    )
    drawdown_high_pct: float = Field(
        default=15.0, ge=0.0, description="组合回撤达到该值 (%) 时为高风险"
    )
    drawdown_critical_pct: float = Field(
        default=25.0, ge=0.0, description="组合回撤达到该值 (%) 时为极高风险"
    )

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="事件日志存储目录",
    )
    cache_file: Path | None = Field(
        default=None,
        description="推荐缓存文件，为空时仅保存在内存",
    )
    initial_cash: float = Field(default=10_000.0, gt=0.0, description="纸交易初始资金")

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @field_validator("watchlist", mode="after")
    @classmethod
    def normalize_watchlist(cls, v: list[str]) -> list[str]:
        """代码统一大写并去重，保持原顺序。"""
        seen: dict[str, None] = {}
        for symbol in v:
            cleaned = symbol.strip().upper()
            if cleaned:
                seen.setdefault(cleaned, None)
        return list(seen)

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)
        if self.cache_file is not None:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)

    def api_key_for(self, provider: Provider) -> str:
        """返回指定服务的 API Key。"""
        return {
            Provider.GEMINI: self.gemini_api_key,
            Provider.GROQ: self.groq_api_key,
            Provider.OPENAI: self.openai_api_key,
        }[provider]

    def daily_limits(self) -> dict[Provider, int]:
        """各服务的每日配额。"""
        return {
            Provider.GEMINI: self.gemini_daily_limit,
            Provider.GROQ: self.groq_daily_limit,
            Provider.OPENAI: self.openai_daily_limit,
        }

    def configured_providers(self) -> list[Provider]:
        """已配置 API Key 的服务，按回退顺序排列。"""
        return [p for p in self.provider_priority if self.api_key_for(p)]

    def validate_for_run(self) -> list[str]:
        """验证自动运行的必要配置，返回缺失项列表。"""
        missing = []
        if not self.configured_providers():
            missing.append("GEMINI_API_KEY / GROQ_API_KEY / OPENAI_API_KEY")
        if not self.finnhub_api_key:
            missing.append("FINNHUB_API_KEY")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
