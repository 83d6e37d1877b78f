"""
実験の運用コマンド実装

winner / start / reset / reopen / delete / force-alternative
"""

import sys

import click

from split_engine.cli.utils.output import echo_error
from split_engine.db.connection import STORE_ERRORS
from split_engine.persistence.adapters import RedisAdapter
from split_engine.persistence.visitor import Visitor


def manage_commands(cli_group, pass_context):
    """運用コマンドを cli グループに追加"""

    @cli_group.command()
    @click.argument("name")
    @click.argument("alternative")
    @pass_context
    def winner(ctx, name: str, alternative: str):
        """勝者を固定する

        \b
        例:
          split-admin winner link_color red
        """
        try:
            experiment = ctx.load_experiment(name)
            experiment.set_winner(alternative)
            click.echo(f"✓ 勝者を設定しました: {name} → {alternative}")
        except ValueError as e:
            echo_error(str(e))
            sys.exit(1)
        except STORE_ERRORS as e:
            echo_error(f"共有ストアに接続できません: {e}")
            sys.exit(1)

    @cli_group.command()
    @click.argument("name")
    @pass_context
    def start(ctx, name: str):
        """実験を開始する（開始時刻を記録）"""
        try:
            experiment = ctx.load_experiment(name)
            experiment.start()
            click.echo(f"✓ 実験を開始しました: {name}")
        except STORE_ERRORS as e:
            echo_error(f"共有ストアに接続できません: {e}")
            sys.exit(1)

    @cli_group.command()
    @click.argument("name")
    @click.option("--yes", is_flag=True, help="確認なしで実行")
    @pass_context
    def reset(ctx, name: str, yes: bool):
        """カウンターを0に戻し、勝者を解除してバージョンを進める"""
        try:
            experiment = ctx.load_experiment(name)
            if not yes and not click.confirm(f"実験 {name} をリセットします。続行しますか？"):
                click.echo("リセットをキャンセルしました")
                return
            experiment.reset()
            click.echo(f"✓ 実験をリセットしました: {name} (バージョン {experiment.version})")
        except STORE_ERRORS as e:
            echo_error(f"共有ストアに接続できません: {e}")
            sys.exit(1)

    @cli_group.command()
    @click.argument("name")
    @pass_context
    def reopen(ctx, name: str):
        """勝者の固定を解除して実験を再開する"""
        try:
            experiment = ctx.load_experiment(name)
            experiment.reopen()
            click.echo(f"✓ 実験を再開しました: {name}")
        except STORE_ERRORS as e:
            echo_error(f"共有ストアに接続できません: {e}")
            sys.exit(1)

    @cli_group.command()
    @click.argument("name")
    @click.option("--yes", is_flag=True, help="確認なしで実行")
    @pass_context
    def delete(ctx, name: str, yes: bool):
        """実験の永続状態をすべて削除する"""
        try:
            experiment = ctx.load_experiment(name)
            if not yes and not click.confirm(f"実験 {name} を削除します。続行しますか？"):
                click.echo("削除をキャンセルしました")
                return
            experiment.delete()
            click.echo(f"✓ 実験を削除しました: {name}")
        except STORE_ERRORS as e:
            echo_error(f"共有ストアに接続できません: {e}")
            sys.exit(1)

    @cli_group.command(name="force-alternative")
    @click.argument("name")
    @click.argument("alternative")
    @click.option("--visitor", "visitor_id", required=True, help="訪問者ID")
    @pass_context
    def force_alternative(ctx, name: str, alternative: str, visitor_id: str):
        """訪問者の割り当てを指定の代替案に書き換える（カウンターは変更しない）

        \b
        例:
          split-admin force-alternative link_color red --visitor 42
        """
        try:
            experiment = ctx.load_experiment(name)
            if alternative not in [alt.name for alt in experiment.alternatives]:
                echo_error(f"代替案が存在しません: {alternative}")
                sys.exit(1)

            adapter = RedisAdapter(
                ctx.connection,
                visitor_id,
                lookup_by=ctx.config.visitor_lookup_by,
                namespace=ctx.config.visitor_namespace,
                expire_seconds=ctx.config.visitor_expire_seconds,
            )
            Visitor(adapter, ctx.catalog).set(experiment.key, alternative)
            click.echo(f"✓ 割り当てを変更しました: visitor={visitor_id}, {name} → {alternative}")
        except STORE_ERRORS as e:
            echo_error(f"共有ストアに接続できません: {e}")
            sys.exit(1)
