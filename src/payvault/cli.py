"""
PayVault CLI: budget-limited payment delegation.

Commands:
    payvault init       Open and fund a vault
    payvault authorize  Grant or revise an agent's budget
    payvault revoke     Remove an agent's permission
    payvault spend      Spend from a vault as an agent
    payvault withdraw   Withdraw everything and close the vault
    payvault fund       Credit a local gateway account
    payvault vault      Show a vault and its permissions
    payvault audit      View audit trail
    payvault demo       Run a full demo flow
"""

from __future__ import annotations

import logging
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .amounts import format_base_units, to_base_units
from .config import PayVaultConfig
from .derivation import normalize_address, normalize_hex32
from .errors import MathOverflow, PayVaultError
from .gateway import LocalTransferGateway
from .instructions import (
    AUTHORIZE_AGENT,
    INITIALIZE_VAULT,
    REVOKE_AGENT,
    SPEND_FROM_VAULT,
    WITHDRAW_AND_CLOSE,
)
from .program import PayVault


def _program() -> PayVault:
    return PayVault.from_config(PayVaultConfig.from_env())


def _refuse_key_from_argv(param_name: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param_name) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        flag = "--" + param_name.replace("_", "-")
        click.echo(
            f"❌ Refusing {flag} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise click.BadParameter("Private key must be a 32-byte hex string")
    try:
        int(candidate, 16)
    except ValueError as e:
        raise click.BadParameter("Private key must be a 32-byte hex string") from e
    return "0x" + candidate


def _parse_amount(value: str) -> int:
    try:
        return to_base_units(value)
    except PayVaultError as e:
        raise click.BadParameter(str(e)) from e


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


_KEY_ARG_OPTION = click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing a private key via argv (unsafe; can leak in shell/process history).",
)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable info logging")
def main(verbose: bool):
    """PayVault: budget-limited payment delegation vaults."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")


@main.command()
@click.option("--owner-key", prompt=True, hide_input=True, help="Owner private key (hex)")
@_KEY_ARG_OPTION
@click.option("--asset", required=True, help="Funding asset (token contract address)")
@click.option("--amount", default="0", help="Initial deposit in asset units")
@click.option("--source-account", default=None, help="Funding account (default: owner's account)")
def init(
    owner_key: str,
    unsafe_allow_key_arg: bool,
    asset: str,
    amount: str,
    source_account: Optional[str],
):
    """Open a vault and optionally fund it."""
    _refuse_key_from_argv("owner_key", unsafe_allow_key_arg)
    key = _resolve_private_key(owner_key)
    owner = Account.from_key(key).address
    program = _program()
    try:
        signed = program.sign(
            key,
            INITIALIZE_VAULT,
            owner=owner,
            asset=asset,
            amount=_parse_amount(amount),
            account=source_account,
        )
        result = program.initialize_vault(signed)
    except PayVaultError as e:
        _fail(f"Failed to initialize vault: {e}")

    click.echo(f"✅ Vault initialized: {result.vault}")
    click.echo(f"   Owner:     {result.owner}")
    click.echo(f"   Asset:     {result.asset}")
    click.echo(f"   Custody:   {result.custody}")
    click.echo(f"   Deposited: {format_base_units(result.deposited)}")


@main.command()
@click.option("--owner-key", prompt=True, hide_input=True, help="Owner private key (hex)")
@_KEY_ARG_OPTION
@click.option("--agent", required=True, help="Agent address")
@click.option("--budget", required=True, help="Budget in asset units")
def authorize(owner_key: str, unsafe_allow_key_arg: bool, agent: str, budget: str):
    """Grant or revise an agent's budget."""
    _refuse_key_from_argv("owner_key", unsafe_allow_key_arg)
    key = _resolve_private_key(owner_key)
    program = _program()
    try:
        signed = program.sign(
            key,
            AUTHORIZE_AGENT,
            owner=Account.from_key(key).address,
            agent=agent,
            amount=_parse_amount(budget),
        )
        result = program.authorize_agent(signed)
    except PayVaultError as e:
        _fail(f"Failed to authorize agent: {e}")

    verb = "authorized" if result.created else "budget revised"
    click.echo(f"✅ Agent {verb}: {result.agent}")
    click.echo(f"   Budget: {format_base_units(result.budget)}")
    click.echo(f"   Spent:  {format_base_units(result.spent)}")


@main.command()
@click.option("--owner-key", prompt=True, hide_input=True, help="Owner private key (hex)")
@_KEY_ARG_OPTION
@click.option("--agent", required=True, help="Agent address")
def revoke(owner_key: str, unsafe_allow_key_arg: bool, agent: str):
    """Remove an agent's permission."""
    _refuse_key_from_argv("owner_key", unsafe_allow_key_arg)
    key = _resolve_private_key(owner_key)
    program = _program()
    try:
        signed = program.sign(key, REVOKE_AGENT, owner=Account.from_key(key).address, agent=agent)
        result = program.revoke_agent(signed)
    except PayVaultError as e:
        _fail(f"Failed to revoke agent: {e}")

    click.echo(f"✅ Agent revoked: {result.agent}")
    click.echo(f"   Final spend: {format_base_units(result.spent)} of {format_base_units(result.budget)}")


@main.command()
@click.option("--agent-key", prompt=True, hide_input=True, help="Agent private key (hex)")
@_KEY_ARG_OPTION
@click.option("--owner", required=True, help="Vault owner address")
@click.option("--amount", required=True, help="Amount in asset units")
@click.option(
    "--treasury",
    required=True,
    help="Treasury account (0x + 64 hex) or holder address (uses its account for the vault asset)",
)
def spend(agent_key: str, unsafe_allow_key_arg: bool, owner: str, amount: str, treasury: str):
    """Spend from a vault as an authorized agent."""
    _refuse_key_from_argv("agent_key", unsafe_allow_key_arg)
    key = _resolve_private_key(agent_key)
    program = _program()
    try:
        treasury_account = _resolve_treasury(program, owner, treasury)
        signed = program.sign(
            key,
            SPEND_FROM_VAULT,
            owner=owner,
            agent=Account.from_key(key).address,
            amount=_parse_amount(amount),
            account=treasury_account,
        )
        result = program.spend_from_vault(signed)
    except PayVaultError as e:
        _fail(f"Spend failed: {e}")

    click.echo(f"✅ Spent {format_base_units(result.amount)}")
    click.echo(f"   Transfer:  {result.transfer_id}")
    click.echo(f"   Remaining: {format_base_units(result.remaining)} of {format_base_units(result.budget)}")


def _resolve_treasury(program: PayVault, owner: str, treasury: str) -> str:
    if len(treasury.strip()) == 66:
        return normalize_hex32(treasury, "treasury")
    vault = program.get_vault(owner)
    if vault is None:
        raise click.BadParameter(f"No vault for owner {owner}")
    return program.associated_account(normalize_address(treasury), vault.asset)


@main.command()
@click.option("--owner-key", prompt=True, hide_input=True, help="Owner private key (hex)")
@_KEY_ARG_OPTION
def withdraw(owner_key: str, unsafe_allow_key_arg: bool):
    """Withdraw the full custody balance and close the vault."""
    _refuse_key_from_argv("owner_key", unsafe_allow_key_arg)
    key = _resolve_private_key(owner_key)
    program = _program()
    try:
        signed = program.sign(key, WITHDRAW_AND_CLOSE, owner=Account.from_key(key).address)
        result = program.withdraw_and_close(signed)
    except PayVaultError as e:
        _fail(f"Withdraw failed: {e}")

    click.echo(f"✅ Vault closed: {result.vault}")
    click.echo(f"   Withdrawn: {format_base_units(result.withdrawn)}")
    click.echo(f"   Refunded:  {result.refund_recipient}")


@main.command()
@click.option("--holder", required=True, help="Account holder address")
@click.option("--asset", required=True, help="Asset (token contract address)")
@click.option("--amount", required=True, help="Amount in asset units")
def fund(holder: str, asset: str, amount: str):
    """Credit a holder's local gateway account (development only)."""
    program = _program()
    gateway = program.gateway
    if not isinstance(gateway, LocalTransferGateway):
        _fail("Funding is only available with the local gateway")
    try:
        account = program.open_associated_account(holder, asset)
        balance = gateway.deposit(account, _parse_amount(amount))
    except PayVaultError as e:
        _fail(f"Funding failed: {e}")

    click.echo(f"✅ Funded {account}")
    click.echo(f"   Balance: {format_base_units(balance)}")


@main.command()
@click.argument("owner")
def vault(owner: str):
    """Show a vault and its agent permissions."""
    program = _program()
    try:
        record = program.get_vault(owner)
        balance = program.custody_balance(owner) if record is not None else 0
        permissions = program.list_permissions(owner)
    except PayVaultError as e:
        _fail(str(e))

    if record is None:
        click.echo(f"No vault for {owner}")
    else:
        click.echo(f"📦 Vault for {record.owner}")
        click.echo(f"   Asset:   {record.asset}")
        click.echo(f"   Balance: {format_base_units(balance)}")

    if not permissions:
        click.echo("   No agent permissions.")
        return
    for p in permissions:
        try:
            remaining = format_base_units(p.remaining)
        except MathOverflow:
            remaining = "over budget"
        orphaned = " (orphaned)" if record is None else ""
        click.echo(
            f"   🤖 {p.agent}: spent {format_base_units(p.spent)} of "
            f"{format_base_units(p.budget)}, remaining {remaining}{orphaned}"
        )


@main.command()
@click.option("--owner", default=None, help="Filter by owner address")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(owner: Optional[str], limit: int):
    """View the audit trail."""
    program = _program()
    events = program.audit.read_events(owner=owner, limit=limit) if program.audit else []

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {format_base_units(event.amount)}" if event.amount else ""
        agent = f" → {event.agent}" if event.agent else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{agent}{reason}")

    if owner and program.audit:
        summary = program.audit.spend_summary(owner)
        click.echo(
            f"\n📊 Spends: {summary.spends} completed, {summary.denied} denied, "
            f"{format_base_units(summary.total_spent)} total"
        )


@main.command()
def demo():
    """Run a full vault lifecycle against throwaway local state."""
    click.echo("🎬 PayVault Demo: Delegated Spending Flow")
    click.echo("=" * 50)

    owner = Account.create()
    agent = Account.create()
    treasury = Account.create()
    asset = Account.create().address
    owner_key = owner.key.hex()
    agent_key = agent.key.hex()

    with tempfile.TemporaryDirectory() as tmp:
        program = PayVault.from_config(PayVaultConfig(home=Path(tmp)))
        gateway = program.gateway
        assert isinstance(gateway, LocalTransferGateway)

        click.echo("\n1️⃣  Funding owner and opening treasury...")
        gateway.deposit(program.open_associated_account(owner.address, asset), 1000)
        treasury_account = program.open_associated_account(treasury.address, asset)
        click.echo(f"   Owner:    {owner.address}")
        click.echo(f"   Agent:    {agent.address}")

        click.echo("\n2️⃣  Opening vault with 1000...")
        init_result = program.initialize_vault(
            program.sign(owner_key, INITIALIZE_VAULT, owner=owner.address, asset=asset, amount=1000)
        )
        click.echo(f"   ✅ Vault {init_result.vault}")

        click.echo("\n3️⃣  Authorizing agent for 300...")
        program.authorize_agent(
            program.sign(owner_key, AUTHORIZE_AGENT, owner=owner.address, agent=agent.address, amount=300)
        )

        click.echo("\n4️⃣  Agent spending...")
        for amount in (120, 200):
            try:
                result = program.spend_from_vault(
                    program.sign(
                        agent_key,
                        SPEND_FROM_VAULT,
                        owner=owner.address,
                        agent=agent.address,
                        amount=amount,
                        account=treasury_account,
                    )
                )
                click.echo(f"   ✅ {amount} spent, {result.remaining} remaining")
            except PayVaultError as e:
                click.echo(f"   ❌ {amount}: {e}")
        click.echo(f"   Custody balance: {program.custody_balance(owner.address)}")

        click.echo("\n5️⃣  Revoking agent and closing vault...")
        program.revoke_agent(
            program.sign(owner_key, REVOKE_AGENT, owner=owner.address, agent=agent.address)
        )
        closed = program.withdraw_and_close(
            program.sign(owner_key, WITHDRAW_AND_CLOSE, owner=owner.address)
        )
        click.echo(f"   ✅ Withdrew {closed.withdrawn} to owner")

        click.echo("\n6️⃣  Audit trail...")
        for event in program.audit.read_events(limit=10) if program.audit else []:
            status = "✅" if event.success else "❌"
            click.echo(f"   {status} {event.event_type}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Fund → Authorize → Spend → Revoke → Close")


if __name__ == "__main__":
    main()
