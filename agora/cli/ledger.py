#!/usr/bin/env python3
"""
Agora Ledger CLI

Command-line interface for driving a proposal ledger stored in a JSON
state file. Membership and thresholds come from agora.toml.

Usage:
    agora-ledger create <proposer> <description> [--payload JSON]
    agora-ledger sponsor <proposal_id> <member> <value>
    agora-ledger vote <proposal_id> <member> (for | against) <value>
    agora-ledger cancel <proposal_id> <caller>
    agora-ledger expire [<proposal_id>]
    agora-ledger show <proposal_id> [--json]
    agora-ledger list
    agora-ledger commitment <proposal_id> <member> [--caller CALLER]
"""

import json
from datetime import datetime, timezone
from typing import Callable, Optional

import click

from agora import __version__
from agora.config import LedgerConfig, load_config
from agora.exceptions import AgoraException, StorageError
from agora.governance import (
    GovernanceError,
    ProposalLedger,
    ProposalState,
    StaticMembershipDirectory,
)
from agora.logger import set_log_level
from agora.storage import JSONLedgerStore


STATE_COLORS = {
    ProposalState.SPONSORING: "cyan",
    ProposalState.VOTING: "yellow",
    ProposalState.APPROVED: "green",
    ProposalState.REJECTED: "red",
    ProposalState.CANCELLED: "white",
}


def format_state(state: ProposalState, width: int = 0) -> str:
    # Pad before styling; escape codes would count towards the width
    return click.style(state.name.ljust(width), fg=STATE_COLORS[state], bold=True)


def format_time(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


class LedgerSession:
    """Loaded config plus the store the ledger lives in."""

    def __init__(self, config: LedgerConfig):
        self.config = config
        self.directory = StaticMembershipDirectory.from_config(config.membership)
        self.store = JSONLedgerStore(config.storage.state_file)

    def load(self) -> ProposalLedger:
        try:
            return self.store.load(
                self.directory,
                time_limit=self.config.ledger.time_limit,
                sponsor_threshold=self.config.ledger.sponsor_threshold,
                vote_threshold=self.config.ledger.vote_threshold,
                sponsor_blocks_vote=self.config.ledger.sponsor_blocks_vote,
            )
        except AgoraException as e:
            raise click.ClickException(str(e))

    def run(self, operation: Callable[[ProposalLedger], object], persist: bool = True):
        """
        Apply *operation* to the stored ledger and persist the result.

        The state file stays locked from load to save, so concurrent
        invocations against the same file are applied one after another.
        State is saved even when the operation fails, since an expired
        proposal is cancelled by the failing call itself.
        """
        try:
            with self.store.lock():
                ledger = self.load()
                try:
                    result = operation(ledger)
                except GovernanceError as e:
                    if persist:
                        self.store.save(ledger)
                    message = f"{type(e).__name__}: {e}"
                    if e.refund > 0:
                        message += f" (refund {e.refund} to caller)"
                    raise click.ClickException(message)
                if persist:
                    self.store.save(ledger)
        except StorageError as e:
            raise click.ClickException(str(e))
        return ledger, result

    def query(self, operation: Callable[[ProposalLedger], object]):
        return self.run(operation, persist=False)


pass_session = click.make_pass_decorator(LedgerSession)


@click.group()
@click.version_option(version=__version__, prog_name="agora-ledger")
@click.option("--config", "-c", "config_path", type=click.Path(), default=None,
              help="Path to agora.toml (default: $AGORA_CONFIG or ./agora.toml)")
@click.option("--state", "-s", "state_file", type=click.Path(), default=None,
              help="Ledger state file (overrides [storage] state_file)")
@click.option("--log-level", "-l", default=None,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                                case_sensitive=False),
              help="Override the configured log level")
@click.pass_context
def cli(ctx, config_path: Optional[str], state_file: Optional[str], log_level: Optional[str]):
    """Agora Ledger Command Line Interface

    Create, sponsor, vote on and cancel funded proposals.
    """
    try:
        config = load_config(config_path)
    except AgoraException as e:
        raise click.ClickException(str(e))
    if state_file:
        config.storage.state_file = state_file
    set_log_level(log_level or config.logging.level)
    ctx.obj = LedgerSession(config)


@cli.command("create")
@click.argument("proposer")
@click.argument("description")
@click.option("--payload", "-p", default=None, help="JSON payload attached to the proposal")
@pass_session
def create_cmd(session: LedgerSession, proposer: str, description: str, payload: Optional[str]):
    """Create a new proposal.

    Examples:

        agora-ledger create alice "Fund the community garden"

        agora-ledger create alice "Raise fee" --payload '{"fee_bps": 15}'
    """
    data = None
    if payload is not None:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"payload is not valid JSON: {e}", param_hint="--payload")

    _, proposal_id = session.run(lambda ledger: ledger.create_proposal(proposer, description, data))
    click.echo(click.style(f"✓ Proposal #{proposal_id} created", fg="green"))


@cli.command("sponsor")
@click.argument("proposal_id", type=int)
@click.argument("member")
@click.argument("value")
@pass_session
def sponsor_cmd(session: LedgerSession, proposal_id: int, member: str, value: str):
    """Sponsor a proposal with VALUE."""
    ledger, total = session.run(lambda ledger: ledger.sponsor(proposal_id, member, value))
    state = ledger.get_proposal_state(proposal_id)
    click.echo(f"Sponsorship total: {total} / {ledger.sponsor_threshold}")
    click.echo(f"State: {format_state(state)}")


@cli.command("vote")
@click.argument("proposal_id", type=int)
@click.argument("member")
@click.argument("stance", type=click.Choice(["for", "against"], case_sensitive=False))
@click.argument("value")
@pass_session
def vote_cmd(session: LedgerSession, proposal_id: int, member: str, stance: str, value: str):
    """Vote FOR or AGAINST a proposal with VALUE.

    Examples:

        agora-ledger vote 1 dave for 60000
    """
    supports = stance.lower() == "for"
    ledger, _ = session.run(lambda ledger: ledger.vote(proposal_id, member, supports, value))
    proposal = ledger.get_proposal(proposal_id)
    click.echo(f"For: {proposal.votes_for}  Against: {proposal.votes_against}  "
               f"(threshold {ledger.vote_threshold})")
    click.echo(f"State: {format_state(proposal.state)}")


@cli.command("cancel")
@click.argument("proposal_id", type=int)
@click.argument("caller")
@pass_session
def cancel_cmd(session: LedgerSession, proposal_id: int, caller: str):
    """Cancel an unsponsored proposal (proposer only)."""
    session.run(lambda ledger: ledger.cancel_proposal(proposal_id, caller))
    click.echo(click.style(f"✓ Proposal #{proposal_id} cancelled", fg="green"))


@cli.command("expire")
@click.argument("proposal_id", type=int, required=False)
@pass_session
def expire_cmd(session: LedgerSession, proposal_id: Optional[int]):
    """Cancel overdue proposals (one, or all when no id is given)."""
    if proposal_id is None:
        _, expired = session.run(lambda ledger: ledger.sweep_expired())
    else:
        _, hit = session.run(lambda ledger: ledger.expire_proposal(proposal_id))
        expired = [proposal_id] if hit else []
    if not expired:
        click.echo("No overdue proposals.")
        return
    for pid in expired:
        click.echo(f"Proposal #{pid} expired → {format_state(ProposalState.CANCELLED)}")


@cli.command("show")
@click.argument("proposal_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@pass_session
def show_cmd(session: LedgerSession, proposal_id: int, as_json: bool):
    """Show one proposal."""
    ledger, proposal = session.query(lambda ledger: ledger.get_proposal(proposal_id))
    if as_json:
        click.echo(json.dumps(proposal.to_dict(), indent=2, default=str))
        return

    click.echo()
    click.echo(click.style(f"Proposal #{proposal.id}", fg="cyan", bold=True))
    click.echo(f"Proposer:     {proposal.proposer}")
    click.echo(f"Description:  {proposal.description}")
    if proposal.payload is not None:
        click.echo(f"Payload:      {json.dumps(proposal.payload, default=str)}")
    click.echo(f"State:        {format_state(proposal.state)}")
    click.echo(f"Created:      {format_time(proposal.created_at)}")
    click.echo(f"Deadline:     {format_time(proposal.deadline(ledger.time_limit))}")
    click.echo(f"Sponsored:    {proposal.sponsor_total} / {ledger.sponsor_threshold}")
    click.echo(f"Votes for:    {proposal.votes_for} / {ledger.vote_threshold}")
    click.echo(f"Against:      {proposal.votes_against} / {ledger.vote_threshold}")
    if proposal.closed_at is not None:
        click.echo(f"Closed:       {format_time(proposal.closed_at)}")


@cli.command("list")
@pass_session
def list_cmd(session: LedgerSession):
    """List all proposals."""
    ledger = session.load()
    ids = ledger.list_proposal_ids()
    if not ids:
        click.echo("No proposals.")
        return
    for pid in ids:
        proposal = ledger.get_proposal(pid)
        click.echo(f"  #{pid:<4} {format_state(proposal.state, 12)} "
                   f"{proposal.proposer:<16} {proposal.description[:48]}")


@cli.command("commitment")
@click.argument("proposal_id", type=int)
@click.argument("member")
@click.option("--caller", default=None, help="Identity asking (default: MEMBER)")
@pass_session
def commitment_cmd(session: LedgerSession, proposal_id: int, member: str, caller: Optional[str]):
    """Show MEMBER's commitment to a proposal."""
    _, commitment = session.query(
        lambda ledger: ledger.get_member_commitment(member, proposal_id, caller or member)
    )
    if commitment is None:
        click.echo(f"{member} has not committed to proposal #{proposal_id}.")
        return
    stance = "FOR" if commitment.supports else "AGAINST"
    click.echo(f"{member} → #{proposal_id}: {stance} {commitment.amount} "
               f"at {format_time(commitment.timestamp)}")


def main():
    cli()


if __name__ == "__main__":
    main()
