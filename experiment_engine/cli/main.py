#!/usr/bin/env python3
"""
実験エンジン CLI メインエントリーポイント

A/Bテストの登録・ステータス遷移・割り当て・コンバージョン記録・結果確認を
Pythonコードを書かずにターミナルから行うための CLI インターフェース。
"""

import logging
import sys
from typing import Optional, Tuple

import click

from experiment_engine.ab_testing.catalog import PostgresExperimentCatalog
from experiment_engine.ab_testing.errors import (
    ExperimentConfigurationError,
    ExperimentError,
)
from experiment_engine.ab_testing.models import ExperimentStatus
from experiment_engine.ab_testing.postgres_store import PostgresAggregateStore
from experiment_engine.ab_testing.service import ExperimentService
from experiment_engine.cli.utils.output import (
    echo_json,
    echo_table,
    format_interval,
    format_optional,
    format_rate,
)
from experiment_engine.cli.utils.yaml_loader import (
    YamlValidationError,
    load_yaml,
    validate_experiment_definition,
)
from experiment_engine.config.ab_config import ABTestingConfig
from experiment_engine.db.connection import DatabaseConnection
from experiment_engine.db.schema import init_schema


STATUS_CHOICES = [s.value for s in ExperimentStatus]


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(self):
        self.db: Optional[DatabaseConnection] = None
        self.config: Optional[ABTestingConfig] = None
        self.service: Optional[ExperimentService] = None
        self._initialized = False

    def initialize(self):
        """遅延初期化（必要時に呼び出される）"""
        if self._initialized:
            return

        try:
            self.db = DatabaseConnection()
            self.config = ABTestingConfig()
            self.config.validate()

            self.service = ExperimentService(
                catalog=PostgresExperimentCatalog(self.db),
                store=PostgresAggregateStore(self.db),
                config=self.config,
            )
            self._initialized = True

        except Exception as e:
            click.echo(f"[初期化エラー] システムの初期化に失敗しました: {e}", err=True)
            sys.exit(1)


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


def _fail(message: str, error: Exception) -> None:
    """例外の種類に応じた終了コードで終了（設定エラーは2、それ以外は1）"""
    click.echo(f"[エラー] {message}: {error}", err=True)
    if isinstance(error, (ExperimentConfigurationError, YamlValidationError)):
        sys.exit(2)
    sys.exit(1)


def _parse_context(items: Tuple[str, ...]) -> dict:
    """key=value 形式のコンテキスト指定を辞書に変換

    true/false は真偽値として扱う（admin=true などの除外フラグ用）。
    """
    context = {}
    for item in items:
        if "=" not in item:
            raise click.BadParameter(f"key=value の形式で指定してください: {item}")
        key, value = item.split("=", 1)
        lowered = value.strip().lower()
        if lowered in ("true", "false"):
            context[key.strip()] = lowered == "true"
        else:
            context[key.strip()] = value
    return context


@click.group()
@click.version_option(version="0.1.0", prog_name="experiment-engine")
@click.option("-v", "--verbose", is_flag=True, help="デバッグログを出力")
@pass_context
def cli(ctx: CLIContext, verbose: bool):
    """
    A/Bテスト実験エンジン CLI

    実験の登録、開始・停止、割り当て、結果確認をターミナルから行えます。
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init-db")
@pass_context
def init_db(ctx: CLIContext):
    """テーブルを作成し、データベースに接続できることを確認する"""
    ctx.initialize()

    try:
        if not ctx.db.health_check():
            click.echo("[エラー] データベースに接続できません", err=True)
            sys.exit(1)
        click.echo("✓ データベースに接続しました")

        init_schema(ctx.db)
        click.echo("✓ A/Bテスト用テーブルを作成しました")

    except Exception as e:
        _fail("初期化に失敗しました", e)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--start", is_flag=True, help="登録後すぐに running にする")
@click.option("--dry-run", is_flag=True, help="検証のみ（登録しない）")
@pass_context
def register(ctx: CLIContext, file: str, start: bool, dry_run: bool):
    """実験定義YAMLから実験を登録する"""
    try:
        data = load_yaml(file)
        validate_experiment_definition(data)

        if dry_run:
            click.echo(f"[dry-run] 実験 '{data['name']}' の定義は有効です")
            echo_json(data)
            return

        ctx.initialize()
        experiment = ctx.service.register_experiment(
            name=data["name"],
            variants=data["variants"],
            description=data.get("description"),
            traffic_percentage=data.get("traffic_percentage", 100),
            goals=data.get("goals"),
            metadata=data.get("metadata"),
        )
        click.echo(
            f"✓ 実験 '{experiment.name}' を登録しました "
            f"(バリアント: {', '.join(experiment.variant_names)})"
        )

        if start:
            ctx.service.start_experiment(experiment.name)
            click.echo(f"✓ 実験 '{experiment.name}' を開始しました")

    except (YamlValidationError, ExperimentError) as e:
        _fail("実験の登録に失敗しました", e)


@cli.command("list")
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="ステータスでフィルタ")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table", help="出力形式")
@click.option("--limit", type=int, default=100, help="最大件数")
@pass_context
def list_experiments(ctx: CLIContext, status: Optional[str], output_format: str, limit: int):
    """登録済み実験の一覧を表示する"""
    ctx.initialize()

    try:
        experiments = ctx.service.list_experiments(status=status, limit=limit)
    except ExperimentError as e:
        _fail("実験一覧の取得に失敗しました", e)
        return

    if output_format == "json":
        echo_json([e.to_dict() for e in experiments])
        return

    if not experiments:
        click.echo("登録済みの実験はありません。")
        click.echo("\nヒント: experiment-engine register <experiment.yaml> で実験を登録してください")
        return

    click.echo(f"実験 ({len(experiments)}件):\n")
    echo_table(
        ["名前", "状態", "バリアント", "トラフィック", "ゴール"],
        [
            [
                e.name,
                e.status.value,
                ", ".join(e.variant_names),
                f"{e.traffic_percentage:g}%",
                len(e.goals),
            ]
            for e in experiments
        ],
    )


@cli.command()
@click.argument("name")
@click.argument("status", type=click.Choice(STATUS_CHOICES))
@pass_context
def transition(ctx: CLIContext, name: str, status: str):
    """実験のステータスを遷移する（draft → running → paused/completed）"""
    ctx.initialize()

    try:
        experiment = ctx.service.transition_status(name, status)
    except ExperimentError as e:
        _fail("ステータスの変更に失敗しました", e)
        return

    click.echo(f"✓ 実験 '{name}' のステータスを {experiment.status.value} に変更しました")


@cli.command()
@click.argument("name")
@click.argument("participant")
@click.option("-c", "--context", "context_items", multiple=True, help="コンテキスト（key=value、複数指定可）")
@click.option("--json", "as_json", is_flag=True, help="JSON形式で出力")
@pass_context
def assign(ctx: CLIContext, name: str, participant: str, context_items: Tuple[str, ...], as_json: bool):
    """参加者にバリアントを割り当てる"""
    context = _parse_context(context_items)
    ctx.initialize()

    try:
        decision = ctx.service.assign(name, participant, context)
    except ExperimentError as e:
        _fail("割り当てに失敗しました", e)
        return

    if as_json:
        echo_json({
            "experiment": name,
            "participant_id": participant,
            "variant": decision.variant,
            "source": decision.source.value,
            "recorded": decision.recorded,
        })
        return

    click.echo(decision.variant)


@cli.command()
@click.argument("name")
@click.argument("participant")
@click.argument("goal")
@pass_context
def convert(ctx: CLIContext, name: str, participant: str, goal: str):
    """コンバージョンを記録する"""
    ctx.initialize()

    try:
        ctx.service.record_conversion(name, participant, goal)
    except ExperimentError as e:
        _fail("コンバージョンの記録に失敗しました", e)
        return

    click.echo(f"✓ コンバージョンを記録しました ({name} / {participant} / {goal})")


@cli.command()
@click.argument("name")
@click.option("--goal", default=None, help="分析するゴール（省略時は全ゴール合計）")
@click.option("--json", "as_json", is_flag=True, help="JSON形式で出力")
@pass_context
def results(ctx: CLIContext, name: str, goal: Optional[str], as_json: bool):
    """実験結果と有意性を表示する"""
    ctx.initialize()

    try:
        experiment_results = ctx.service.experiment_results(name, goal=goal)
    except ExperimentError as e:
        _fail("結果の取得に失敗しました", e)
        return

    if as_json:
        echo_json(experiment_results.to_dict())
        return

    report = experiment_results.significance
    experiment = experiment_results.experiment
    click.echo(f"実験: {experiment.name} ({experiment.status.value})")
    click.echo(f"参加者数: {experiment_results.participants}")
    if goal:
        click.echo(f"ゴール: {goal}")
    click.echo("")

    rows = []
    for variant in report.variants.values():
        rows.append([
            variant.variant + (" (control)" if variant.is_control else ""),
            variant.participants,
            variant.conversions,
            format_rate(variant.conversion_rate),
            format_interval(variant.interval),
            format_optional(variant.z_score, "{:.3f}"),
            format_optional(variant.confidence),
            "yes" if variant.is_significant else "no",
        ])
    echo_table(
        ["バリアント", "参加者", "CV", "CV率", "95%区間", "z値", "信頼度", "有意"],
        rows,
    )

    click.echo("")
    click.echo(f"推奨: {report.recommendation}")

    if experiment_results.risks:
        click.echo("\nリスク:")
        for risk in experiment_results.risks:
            click.echo(f"  - [{risk.severity}] {risk.message} ({risk.mitigation})")

    if experiment_results.actions:
        click.echo("\n推奨アクション:")
        for action in experiment_results.actions:
            click.echo(f"  - {action.action}: {', '.join(action.details)}")


@cli.command()
@click.argument("name")
@pass_context
def rebuild(ctx: CLIContext, name: str):
    """割り当て・コンバージョンログからカウンタを再計算する"""
    ctx.initialize()

    try:
        counts = ctx.service.rebuild_counters(name)
    except ExperimentError as e:
        _fail("カウンタの再計算に失敗しました", e)
        return

    click.echo(f"✓ 実験 '{name}' のカウンタを再計算しました\n")
    echo_table(
        ["バリアント", "参加者", "CV"],
        [[variant, c.assignments, c.total_conversions] for variant, c in counts.items()],
    )


if __name__ == "__main__":
    cli()
