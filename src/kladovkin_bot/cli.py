import asyncio

import click

from . import __version__
from .config import DEFAULT_SCRAPE_URL, AppConfig, ConfigManager
from .errors import ConfigError, KladovkinError


def _load(config_manager: ConfigManager) -> AppConfig:
    try:
        return config_manager.load()
    except ConfigError as e:
        raise click.ClickException(str(e))


def _open_app(config_dir):
    """Load config, set up logging and build the application"""
    from .app import Application, setup_logging
    from .database import Database

    config_manager = ConfigManager(config_dir)
    cfg = _load(config_manager)
    setup_logging(config_manager.log_dir, cfg.log_level_value)
    try:
        db = Database(config_manager.get_db_path())
    except KladovkinError as e:
        raise click.ClickException(str(e))
    return Application(config=cfg, db=db), config_manager


config_dir_option = click.option(
    "--config-dir",
    type=click.Path(),
    default=None,
    help="Каталог с config.json и data.db"
)


@click.group(name="kladovkin-bot", help="Бот уведомлений о свободных кладовках")
def cli():
    pass


@cli.command(help="Показать версию")
def version():
    click.echo(f"kladovkin-bot {__version__}")


@cli.command(help="Интерактивная настройка")
@config_dir_option
def init(config_dir):
    config_manager = ConfigManager(config_dir)

    click.echo("🚀 Бот свободных кладовок - настройка\n")

    # Check existing config
    existing = {}
    if config_manager.exists():
        try:
            existing = config_manager.load_raw()
        except ConfigError as e:
            click.echo(f"⚠️ Текущий конфиг не читается: {e}")
        if existing.get("bot_token"):
            click.echo("Найдена конфигурация:")
            click.echo(f"  Bot Token: {existing['bot_token'][:10]}...")
            click.echo(f"  Адрес сайта: {existing.get('scrape_url', '')}")
            if not click.confirm("\nПерезаписать?", default=False):
                click.echo("Отменено")
                return

    click.echo("\n1. Telegram Bot Token")
    click.echo("   Получите токен у @BotFather")
    bot_token = click.prompt("   Bot Token", type=str)

    click.echo("\n2. Страница со списком кладовок")
    scrape_url = click.prompt("   URL", type=str, default=existing.get("scrape_url", DEFAULT_SCRAPE_URL))

    click.echo("\n3. Интервалы (секунды)")
    scrape_interval = click.prompt("   Обновление каталога", type=int, default=3600)
    notify_interval = click.prompt("   Рассылка уведомлений", type=int, default=3600)

    click.echo("\n4. Chat ID администратора (необязательно, для системных предупреждений)")
    admin_chat_id_str = click.prompt("   Chat ID (пусто - пропустить)", type=str, default="")
    admin_chat_id = int(admin_chat_id_str) if admin_chat_id_str else None

    try:
        config = AppConfig(
            bot_token=bot_token,
            scrape_url=scrape_url,
            scrape_interval=scrape_interval,
            notify_interval=notify_interval,
            admin_chat_id=admin_chat_id,
        )
    except ValueError as e:
        raise click.ClickException(f"Некорректные значения: {e}")
    config_manager.save(config)

    click.echo(f"\n✅ Конфигурация сохранена: {config_manager.config_path}")
    click.echo("\nЗапуск: kladovkin-bot run")


@cli.command(help="Показать текущую конфигурацию")
@config_dir_option
def config(config_dir):
    config_manager = ConfigManager(config_dir)
    cfg = _load(config_manager)

    click.echo("📋 Текущая конфигурация:\n")
    click.echo(f"  Bot Token: {cfg.masked_token()}")
    if cfg.admin_chat_id:
        click.echo(f"  Chat ID администратора: {cfg.admin_chat_id}")
    click.echo(f"  Адрес сайта: {cfg.scrape_url}")
    click.echo(f"  HTTP таймаут: {cfg.http_timeout:g} с")
    click.echo(f"  Обновление каталога: каждые {cfg.scrape_interval} с")
    click.echo(f"  Рассылка: каждые {cfg.notify_interval} с")
    click.echo(f"  Пауза между уведомлениями: {cfg.notification_cooldown} с")
    click.echo(f"  Предупреждение после {cfg.failure_alert_threshold} ошибок подряд")
    click.echo(f"  Уровень логов: {cfg.log_level}")
    click.echo()
    click.echo(f"  Конфиг: {config_manager.config_path}")
    click.echo(f"  База данных: {config_manager.db_path}")
    click.echo(f"  Логи: {config_manager.log_dir}")


@cli.command(help="Запустить бота и периодические задачи")
@config_dir_option
@click.option(
    "--run-on-start",
    is_flag=True,
    help="Сразу обновить каталог и разослать уведомления"
)
def run(config_dir, run_on_start):
    app, config_manager = _open_app(config_dir)

    click.echo("🚀 Запуск бота...")
    click.echo(f"   Сайт: {app.config.scrape_url}")
    click.echo(f"   Логи: {config_manager.log_dir}\n")

    app.run(run_on_start=run_on_start)


@cli.command(help="Обновить каталог один раз")
@config_dir_option
def scrape(config_dir):
    from .app import SCRAPE_TASK

    app, _ = _open_app(config_dir)
    if not asyncio.run(app.run_once(SCRAPE_TASK)):
        raise click.ClickException("Не удалось обновить каталог, подробности в логе")
    stats = app.db.get_stats()
    click.echo(f"✅ В каталоге {stats['unit_count']} боксов, свободно {stats['available_unit_count']}")


@cli.command(help="Разослать уведомления один раз")
@config_dir_option
def notify(config_dir):
    from .app import NOTIFY_TASK

    app, _ = _open_app(config_dir)
    if not asyncio.run(app.run_once(NOTIFY_TASK)):
        raise click.ClickException("Рассылка завершилась с ошибкой, подробности в логе")
    click.echo("✅ Рассылка завершена")


@cli.command(help="Показать каталог кладовок")
@config_dir_option
@click.option("--city", type=str, default=None, help="Только этот город")
def units(config_dir, city):
    from .database import Database

    config_manager = ConfigManager(config_dir)
    if not config_manager.db_path.exists():
        click.echo("📭 База данных ещё не создана, запустите 'kladovkin-bot scrape'")
        return

    db = Database(config_manager.db_path)
    rows = [u for u in db.all_units() if city is None or u.city == city]
    if not rows:
        click.echo("📭 Каталог пуст")
        return

    for unit in rows:
        mark = "🟢" if unit.available else "🔴"
        click.echo(f"{mark} {unit.city} | {unit.storage_name} | {unit.size} | {unit.price:g} ₽ | обновлено {unit.updated_at:%Y-%m-%d %H:%M}")
    click.echo(f"\nВсего: {len(rows)}")


if __name__ == "__main__":
    cli()
