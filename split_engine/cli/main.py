#!/usr/bin/env python3
"""
split-admin CLI メインエントリーポイント

共有ストア上の実験を一覧・参照し、勝者の固定・開始・リセット・再開・削除、
勝者確率の推定を行うための運用者向け CLI。
"""

import sys
from typing import Optional

import click

from split_engine import __version__
from split_engine.ab_testing.catalog import ExperimentCatalog
from split_engine.ab_testing.experiment import Experiment
from split_engine.ab_testing.winner_estimator import BayesianWinnerEstimator
from split_engine.cli.utils.output import (
    echo_error,
    echo_json,
    echo_table,
    format_percent,
    format_time,
)
from split_engine.config.split_config import SplitConfig
from split_engine.db.connection import STORE_ERRORS, RedisConnection
from split_engine.exceptions import ConfigurationError

from split_engine.cli.commands.manage import manage_commands


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(self):
        self.config_path: Optional[str] = None
        self.redis_url: Optional[str] = None
        self.config: Optional[SplitConfig] = None
        self.connection: Optional[RedisConnection] = None
        self.catalog: Optional[ExperimentCatalog] = None
        self._initialized = False

    def initialize(self):
        """遅延初期化（必要時に呼び出される）"""
        if self._initialized:
            return

        try:
            if self.config_path:
                self.config = SplitConfig.from_yaml(self.config_path, redis_url=self.redis_url)
            else:
                self.config = SplitConfig(redis_url=self.redis_url)
            self.connection = RedisConnection(self.config.redis_url)
            self.catalog = ExperimentCatalog(self.connection, self.config)
            self._initialized = True

        except (ConfigurationError, OSError) as e:
            click.echo(f"[初期化エラー] 設定の読み込みに失敗しました: {e}", err=True)
            sys.exit(1)

    def load_experiment(self, name: str) -> Experiment:
        """登録済みの実験を取得（見つからない場合は終了コード1で終了）"""
        self.initialize()
        experiment = self.catalog.find(name)
        if experiment is None:
            echo_error(f"実験が見つかりません: {name}")
            sys.exit(1)
        return experiment


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group()
@click.version_option(version=__version__, prog_name="split-admin")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="実験定義YAMLファイル")
@click.option("--redis-url", envvar="REDIS_URL", default=None, help="共有ストアの接続URL")
@pass_context
def cli(ctx: CLIContext, config_path: Optional[str], redis_url: Optional[str]):
    """
    A/Bテスト 実験管理 CLI

    共有ストア上の実験の状態確認と運用操作をターミナルから行えます。
    """
    ctx.config_path = config_path
    ctx.redis_url = redis_url


@cli.command(name="list")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table",
              help="出力形式")
@pass_context
def list_experiments(ctx: CLIContext, output_format: str):
    """登録済み実験の一覧を表示する（勝者未確定の実験が先）"""
    ctx.initialize()

    try:
        experiments = ctx.catalog.all_active_first()

        if not experiments:
            click.echo("登録済みの実験はありません。")
            return

        if output_format == "json":
            echo_json([experiment.to_dict() for experiment in experiments])
            return

        click.echo(f"登録済み実験 ({len(experiments)}件):\n")
        rows = []
        for experiment in experiments:
            winner = experiment.winner
            rows.append([
                experiment.name,
                experiment.version,
                len(experiment.alternatives),
                experiment.participant_count,
                winner.name if winner else "-",
                format_time(experiment.start_time),
            ])
        echo_table(["名前", "バージョン", "代替案数", "参加数", "勝者", "開始時刻"], rows)

    except STORE_ERRORS as e:
        echo_error(f"共有ストアに接続できません: {e}")
        sys.exit(1)


@cli.command()
@click.argument("name")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table",
              help="出力形式")
@pass_context
def show(ctx: CLIContext, name: str, output_format: str):
    """実験の詳細と代替案ごとのカウンターを表示する"""
    try:
        experiment = ctx.load_experiment(name)

        if output_format == "json":
            echo_json(experiment.to_dict())
            return

        winner = experiment.winner
        click.echo(f"実験: {experiment.name}")
        click.echo(f"  バージョン: {experiment.version}")
        click.echo(f"  開始時刻: {format_time(experiment.start_time)}")
        click.echo(f"  勝者: {winner.name if winner else '-'}")
        click.echo(f"  アルゴリズム: {experiment.algorithm}")
        if experiment.goals:
            click.echo(f"  ゴール: {', '.join(experiment.goals)}")
        if experiment.scores:
            click.echo(f"  スコア: {', '.join(experiment.scores)}")
        click.echo("")

        rows = []
        for alternative, counts in zip(experiment.alternatives, experiment.alternative_counts()):
            label = f"{alternative.name} (control)" if alternative.is_control else alternative.name
            rows.append([
                label,
                counts.participant_count,
                counts.completed_count,
                format_percent(counts.conversion_rate()),
                format_percent(alternative.p_winner()),
            ])
        echo_table(["代替案", "参加数", "完了数", "変換率", "勝者確率"], rows)

        for goal in experiment.goals:
            click.echo(f"\nゴール: {goal}")
            goal_rows = [
                [counts.name, counts.completed(goal), format_percent(counts.conversion_rate(goal)),
                 format_percent(alternative.p_winner(goal))]
                for alternative, counts in zip(experiment.alternatives, experiment.alternative_counts())
            ]
            echo_table(["代替案", "完了数", "変換率", "勝者確率"], goal_rows)

    except STORE_ERRORS as e:
        echo_error(f"共有ストアに接続できません: {e}")
        sys.exit(1)


@cli.command()
@click.argument("name")
@click.option("--simulations", type=int, default=None, help="モンテカルロ試行回数")
@click.option("--seed", type=int, default=None, help="乱数シード")
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table",
              help="出力形式")
@pass_context
def estimate(ctx: CLIContext, name: str, simulations: Optional[int], seed: Optional[int],
             output_format: str):
    """勝者確率を推定して代替案に書き込む"""
    try:
        experiment = ctx.load_experiment(name)
        estimator = BayesianWinnerEstimator(
            simulations or ctx.config.beta_probability_simulations,
            random_state=seed,
        )
        results = estimator.calc_winning_alternatives(experiment)

        if output_format == "json":
            echo_json({
                ("overall" if goal is None else goal): probabilities
                for goal, probabilities in results.items()
            })
            return

        for goal, probabilities in results.items():
            click.echo(f"{'全体' if goal is None else f'ゴール: {goal}'}")
            echo_table(
                ["代替案", "勝者確率"],
                [[alt, format_percent(p)] for alt, p in probabilities.items()],
            )

    except STORE_ERRORS as e:
        echo_error(f"共有ストアに接続できません: {e}")
        sys.exit(1)


# 運用コマンドを登録
manage_commands(cli, pass_context)


if __name__ == "__main__":
    cli()
