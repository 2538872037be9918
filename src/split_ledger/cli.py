"""CLI for split-ledger using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation

import click
import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .exceptions import LedgerError
from .models import (
    Expense,
    Group,
    LinkedTransfer,
    MemberSplitDefault,
    ParticipantInput,
    SplitType,
)
from .money import Money
from .service import LedgerService, open_service

app = typer.Typer(
    name="split-ledger",
    help="Track shared expenses, split them fairly, and settle up",
)

console = Console()

ACTING_USER = typer.Option(..., "--as", help="User performing the operation")
VERBOSE = typer.Option(False, "--verbose", "-v", help="Verbose output")


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def ledger_session(verbose: bool) -> Iterator[LedgerService]:
    """Open the configured ledger and report failures the same way everywhere."""
    setup_logging(verbose)
    db = None
    try:
        settings = load_settings()
        service, db = open_service(settings)
        yield service
    except (click.ClickException, click.exceptions.Exit, click.Abort):
        # Usage errors keep click's own message and exit code
        raise
    except LedgerError as e:
        # Rejected by the ledger (bad split, not authorized, nothing to settle)
        console.print(f"\n[bold yellow]⚠️  {e}[/bold yellow]\n")
        if verbose:
            raise
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


def format_money(money: Money, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (85.02)
    Positive amounts have spaces:      85.02
    The spaces ensure decimal points align in tables.
    """
    magnitude = f"{abs(money).to_decimal():,}"
    if money.amount < 0:
        if use_color:
            return f"([red]{magnitude}[/red])"
        return f"({magnitude})"
    if use_color and money.amount > 0:
        return f" [green]{magnitude}[/green] "
    return f" {magnitude} "


def parse_participants(
    values: list[str], split_type: SplitType, currency: str
) -> list[ParticipantInput]:
    """
    Parse repeated --participant options.

    Each value is "user" or "user:weight", where the weight is a percentage,
    a share count or an exact amount depending on the split type.
    """
    inputs = []
    for value in values:
        user_id, _, weight = value.partition(":")
        user_id = user_id.strip()
        weight = weight.strip()
        if not user_id:
            raise typer.BadParameter(f"Missing user in participant {value!r}")

        item = ParticipantInput(user_id=user_id)
        if weight:
            try:
                if split_type is SplitType.PERCENTAGE:
                    item.percentage = Decimal(weight)
                elif split_type is SplitType.SHARES:
                    item.shares = int(weight)
                elif split_type is SplitType.EXACT:
                    item.exact_amount = Money.parse(weight, currency).amount
            except (InvalidOperation, ValueError) as e:
                raise typer.BadParameter(
                    f"Invalid weight {weight!r} for {user_id}"
                ) from e
        inputs.append(item)
    return inputs


def parse_transfer(values: list[str]) -> LinkedTransfer | None:
    """
    Parse repeated --account options.

    Each value is "user=account_id". The money moves between the accounts of
    whichever member turns out to owe and whichever is owed.
    """
    if not values:
        return None
    accounts = {}
    for value in values:
        user_id, sep, account_id = value.partition("=")
        if not sep or not user_id.strip() or not account_id.strip():
            raise typer.BadParameter(f"Expected user=account, got {value!r}")
        accounts[user_id.strip()] = account_id.strip()
    return LinkedTransfer(accounts=accounts)


def display_group(group: Group):
    console.print(f"\n[bold]{group.name}[/bold] [dim]({group.id})[/dim]")
    console.print(f"  Owner: {group.owner_id}")
    console.print(f"  Currency: {group.currency}")
    console.print(f"  Members: {', '.join(group.members)}")
    console.print(f"  Default split: {group.default_split_type.value}")
    for default in group.default_splits:
        weight = default.shares if default.percentage is None else default.percentage
        console.print(f"    {default.user_id}: {weight}")


def display_expense(expense: Expense):
    """Display an expense and its participant rows in a table."""
    console.print(f"\n[bold]{expense.description}[/bold] [dim]({expense.id})[/dim]")
    console.print(f"  Date: {expense.expense_date}")
    console.print(f"  Paid by: {expense.payer_id}")
    console.print(f"  Total: {format_money(expense.total)} {expense.total.currency}")
    console.print(f"  Split: {expense.split_type.value}")
    console.print()

    table = Table(title="Participants", show_header=True, header_style="bold magenta")
    table.add_column("Member", style="cyan", width=20)
    table.add_column("Owes", justify="right", width=14)
    table.add_column("Weight", justify="right", width=10)
    table.add_column("Status", justify="center", width=10)

    for participant in expense.participants:
        if participant.percentage is not None:
            weight = f"{participant.percentage}%"
        elif participant.shares is not None:
            weight = str(participant.shares)
        else:
            weight = "—"

        if participant.user_id == expense.payer_id:
            status = "[dim]payer[/dim]"
        elif participant.is_paid:
            status = "[green]paid[/green]"
        else:
            status = "[yellow]unpaid[/yellow]"

        table.add_row(
            participant.user_id,
            format_money(participant.amount_owed),
            weight,
            status,
        )

    console.print(table)

    owed = sum(p.amount_owed.amount for p in expense.participants)
    if owed == expense.total.amount:
        console.print("  [green]✓ Shares add up to the total[/green]")
    else:
        console.print(
            f"  [red]✗ Shares add up to {owed}, expected {expense.total.amount}[/red]"
        )


# ============================================================================
# Groups
# ============================================================================


@app.command()
def group_create(
    name: str = typer.Argument(..., help="Group name"),
    owner: str = typer.Option(..., "--owner", help="Owner (first member)"),
    members: list[str] = typer.Option(
        [], "--member", "-m", help="Additional member (repeatable)"
    ),
    currency: str | None = typer.Option(
        None, "--currency", help="ISO currency code (default from settings)"
    ),
    verbose: bool = VERBOSE,
):
    """Create a group of members who share expenses."""
    with ledger_session(verbose) as service:
        group = service.create_group(name, owner, members, currency=currency)
        console.print("\n[bold green]✓ Group created![/bold green]")
        display_group(group)


@app.command()
def group_show(
    group_id: str = typer.Argument(..., help="Group ID"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Show a group's members and default split."""
    with ledger_session(verbose) as service:
        display_group(service.get_group(group_id, acting))


@app.command()
def member_add(
    group_id: str = typer.Argument(..., help="Group ID"),
    user_id: str = typer.Argument(..., help="Member to add"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Add a member to a group (owner only)."""
    with ledger_session(verbose) as service:
        group = service.add_member(group_id, user_id, acting)
        console.print(f"[green]✓ Members: {', '.join(group.members)}[/green]")


@app.command()
def member_remove(
    group_id: str = typer.Argument(..., help="Group ID"),
    user_id: str = typer.Argument(..., help="Member to remove"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Remove a member (or leave, with --as yourself) if they have no history."""
    with ledger_session(verbose) as service:
        group = service.remove_member(group_id, user_id, acting)
        console.print(f"[green]✓ Members: {', '.join(group.members)}[/green]")


@app.command()
def default_split(
    group_id: str = typer.Argument(..., help="Group ID"),
    split: SplitType = typer.Option(
        SplitType.EQUAL, "--split", "-s", case_sensitive=False, help="Split type"
    ),
    weights: list[str] = typer.Option(
        [], "--weight", "-w", help="Member weight as user:value (repeatable)"
    ),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Set the split new expenses use when none is given."""
    with ledger_session(verbose) as service:
        group = service.get_group(group_id, acting)
        parsed = parse_participants(weights, split, group.currency)
        member_splits = [
            MemberSplitDefault(
                user_id=item.user_id, percentage=item.percentage, shares=item.shares
            )
            for item in parsed
        ]
        group = service.update_default_split(group_id, split, member_splits, acting)
        console.print("\n[bold green]✓ Default split updated![/bold green]")
        display_group(group)


# ============================================================================
# Expenses
# ============================================================================


@app.command()
def expense_add(
    group_id: str = typer.Argument(..., help="Group ID"),
    description: str = typer.Argument(..., help="What the money was spent on"),
    amount: str = typer.Option(..., "--amount", "-a", help="Total, e.g. 90.00"),
    payer: str = typer.Option(..., "--payer", "-p", help="Member who paid"),
    split: SplitType | None = typer.Option(
        None, "--split", "-s", case_sensitive=False, help="Split type"
    ),
    participants: list[str] = typer.Option(
        [],
        "--participant",
        help="Participant as user or user:value (repeatable, default all members)",
    ),
    category: str | None = typer.Option(None, "--category", help="Category ID"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """
    Record an expense and split it among participants.

    Without --split the group's default split is used. Without --participant
    every member takes part.
    """
    with ledger_session(verbose) as service:
        group = service.get_group(group_id, acting)
        split_type = split or group.default_split_type
        inputs = (
            parse_participants(participants, split_type, group.currency)
            if participants
            else None
        )
        expense = service.create_expense(
            group_id,
            payer,
            Money.parse(amount, group.currency),
            description,
            acting,
            split_type=split_type,
            participants=inputs,
            category_id=category,
        )
        console.print("\n[bold green]✓ Expense recorded![/bold green]")
        display_expense(expense)


@app.command()
def expense_edit(
    expense_id: str = typer.Argument(..., help="Expense ID"),
    amount: str | None = typer.Option(None, "--amount", "-a", help="New total"),
    split: SplitType | None = typer.Option(
        None, "--split", "-s", case_sensitive=False, help="New split type"
    ),
    participants: list[str] = typer.Option(
        [], "--participant", help="Replacement participants (repeatable)"
    ),
    description: str | None = typer.Option(None, "--description", "-d"),
    category: str | None = typer.Option(None, "--category"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Edit an expense. The split is locked once a participant has paid."""
    with ledger_session(verbose) as service:
        expense = service.get_expense(expense_id, acting)
        currency = expense.total.currency
        split_type = split or expense.split_type
        expense = service.update_expense(
            expense_id,
            acting,
            total=Money.parse(amount, currency) if amount else None,
            split_type=split,
            participants=(
                parse_participants(participants, split_type, currency)
                if participants
                else None
            ),
            description=description,
            category_id=category,
        )
        console.print("\n[bold green]✓ Expense updated![/bold green]")
        display_expense(expense)


@app.command()
def expense_delete(
    expense_id: str = typer.Argument(..., help="Expense ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Delete an expense and its participant rows."""
    with ledger_session(verbose) as service:
        expense = service.get_expense(expense_id, acting)
        display_expense(expense)

        if not yes:
            console.print(
                "\n[bold yellow]⚠️  Ready to delete this expense[/bold yellow]"
            )
            confirm = input("Continue? [y/N] ").strip().lower()
            if confirm not in ("y", "yes"):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        service.delete_expense(expense_id, acting)
        console.print("\n[bold green]✓ Expense deleted[/bold green]")


@app.command()
def expense_show(
    expense_id: str = typer.Argument(..., help="Expense ID"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Show one expense with its participant rows."""
    with ledger_session(verbose) as service:
        display_expense(service.get_expense(expense_id, acting))


@app.command()
def expenses(
    group_id: str = typer.Argument(..., help="Group ID"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """List a group's expenses."""
    with ledger_session(verbose) as service:
        rows = service.list_expenses(group_id, acting)
        if not rows:
            console.print("[yellow]No expenses recorded.[/yellow]")
            return

        table = Table(title="Expenses", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim", width=12)
        table.add_column("Date", width=10)
        table.add_column("Description", style="cyan", width=40)
        table.add_column("Paid by", width=14)
        table.add_column("Total", justify="right", width=14)
        table.add_column("Paid rows", justify="center", width=10)

        for expense in rows:
            debts = expense.debts()
            desc = expense.description
            table.add_row(
                expense.id[:12],
                str(expense.expense_date),
                desc[:40] + "..." if len(desc) > 40 else desc,
                expense.payer_id,
                format_money(expense.total),
                f"{sum(p.is_paid for p in debts)}/{len(debts)}",
            )

        console.print(table)


# ============================================================================
# Balances
# ============================================================================


@app.command()
def balances(
    group_id: str = typer.Argument(..., help="Group ID"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Show who owes whom, pair by pair, and each member's net position."""
    with ledger_session(verbose) as service:
        pairs = service.get_group_balances(group_id, acting)

        table = Table(title="Pair Balances", show_header=True, header_style="bold")
        table.add_column("Owes", style="cyan")
        table.add_column("To", style="cyan")
        table.add_column("Amount", justify="right", width=14)
        table.add_column("Historical", justify="right", width=14)
        table.add_column("Paid", justify="right", width=14)

        for pair in pairs:
            if pair.amount.is_zero():
                debtor, creditor = pair.user_a, pair.user_b
            else:
                debtor, creditor = pair.debtor_id, pair.creditor_id
            table.add_row(
                debtor,
                creditor,
                format_money(abs(pair.amount)),
                format_money(pair.total_historical, use_color=False),
                format_money(pair.total_paid, use_color=False),
            )
        console.print(table)

        console.print("\n[bold]Net positions:[/bold]")
        for member, position in service.get_member_balances(group_id, acting).items():
            console.print(f"  {member:<20} {format_money(position)}")


@app.command()
def simplify(
    group_id: str = typer.Argument(..., help="Group ID"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Suggest a small set of transfers that settles everyone."""
    with ledger_session(verbose) as service:
        transfers = service.get_simplified_debts(group_id, acting)
        if not transfers:
            console.print("[green]✓ Everyone is settled up.[/green]")
            return

        console.print("\n[bold]Suggested transfers:[/bold]")
        for transfer in transfers:
            console.print(
                f"  {transfer.from_user_id} → {transfer.to_user_id}: "
                f"{format_money(transfer.amount)} {transfer.amount.currency}"
            )


# ============================================================================
# Settlement
# ============================================================================


@app.command()
def mark_paid(
    expense_id: str = typer.Argument(..., help="Expense ID"),
    user_id: str = typer.Argument(..., help="Participant who paid their share"),
    accounts: list[str] = typer.Option(
        [], "--account", help="Linked account as user=account_id (repeatable)"
    ),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Mark one participant's share of an expense as paid."""
    with ledger_session(verbose) as service:
        transfer = parse_transfer(accounts)
        payment = service.mark_participant_paid(
            expense_id, user_id, acting, transfer=transfer
        )
        console.print(
            f"\n[bold green]✓ {payment.from_user_id} paid {payment.to_user_id} "
            f"{payment.amount}[/bold green]"
        )
        if payment.linked_transfer_id:
            console.print(f"[green]Transfer ID: {payment.linked_transfer_id}[/green]")


@app.command()
def mark_unpaid(
    expense_id: str = typer.Argument(..., help="Expense ID"),
    user_id: str = typer.Argument(..., help="Participant to revert"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Revert a participant's share to unpaid (payer only)."""
    with ledger_session(verbose) as service:
        participant = service.mark_participant_unpaid(expense_id, user_id, acting)
        console.print(
            f"[green]✓ {participant.user_id} owes "
            f"{participant.amount_owed} again[/green]"
        )


@app.command()
def settle(
    group_id: str = typer.Argument(..., help="Group ID"),
    user_a: str = typer.Argument(..., help="First member"),
    user_b: str = typer.Argument(..., help="Second member"),
    accounts: list[str] = typer.Option(
        [], "--account", help="Linked account as user=account_id (repeatable)"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Settle everything two members owe each other with one payment."""
    with ledger_session(verbose) as service:
        transfer = parse_transfer(accounts)
        balance = service.get_pair_balance(group_id, user_a, user_b, acting)
        if balance.amount.is_zero():
            console.print(f"[green]✓ {user_a} and {user_b} are settled up.[/green]")
            return

        console.print(
            f"\n[bold]{balance.debtor_id} owes {balance.creditor_id} "
            f"{abs(balance.amount)}[/bold]"
        )
        if not yes:
            confirm = input("Record settlement? [y/N] ").strip().lower()
            if confirm not in ("y", "yes"):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        result = service.settle_all(
            group_id, user_a, user_b, acting, transfer=transfer
        )
        console.print(
            f"\n[bold green]✓ Settled {result.settled_participants} rows with "
            f"payment {result.payment.id}[/bold green]"
        )
        if result.transfer_id:
            console.print(f"[green]Transfer ID: {result.transfer_id}[/green]")


@app.command()
def payments(
    group_id: str = typer.Argument(..., help="Group ID"),
    acting: str = ACTING_USER,
    verbose: bool = VERBOSE,
):
    """Show a group's payment history, newest first."""
    with ledger_session(verbose) as service:
        history = service.get_payment_history(group_id, acting)
        if not history:
            console.print("[yellow]No payments recorded.[/yellow]")
            return

        table = Table(title="Payments", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim", width=12)
        table.add_column("Date", width=16)
        table.add_column("From", style="cyan")
        table.add_column("To", style="cyan")
        table.add_column("Amount", justify="right", width=14)
        table.add_column("Expenses", justify="center")
        table.add_column("Reversed", justify="center")

        for payment in history:
            table.add_row(
                payment.id[:12],
                payment.created_at.strftime("%Y-%m-%d %H:%M"),
                payment.from_user_id,
                payment.to_user_id,
                format_money(payment.amount),
                str(len(payment.expense_ids)),
                str(len(payment.reversals)) if payment.reversals else "",
            )

        console.print(table)


if __name__ == "__main__":
    app()
