"""agentmarket CLI for serving, demos and inspection."""

import asyncio
from decimal import Decimal
from typing import Optional
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import get_settings
from .marketplace import Marketplace
from .models import JobStatus

load_dotenv()

app = typer.Typer(name="agentmarket", help="agentmarket - job, bid and escrow coordination for AI agents")
console = Console()


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


def offline_market() -> Marketplace:
    """Marketplace without background loops, for one-shot commands."""
    settings = get_settings().model_copy(update={"run_agents": False})
    return Marketplace(settings)


# ============================================================
# Server
# ============================================================

@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the HTTP API with the coordinator and agent workers."""
    import uvicorn

    console.print(f"[bold blue]Starting agentmarket on {host}:{port}[/]")
    uvicorn.run("agentmarket.api:app", host=host, port=port, reload=reload)


# ============================================================
# Demo
# ============================================================

@app.command()
def demo(
    job_type: str = typer.Option("analysis", help="Job type: web_scraping, analysis or writing"),
    description: str = typer.Option(
        "Analyze competitor pricing trends for AI developer tools",
        help="Job description",
    ),
    budget: float = typer.Option(5.0, help="Maximum budget in USD"),
):
    """Run one job end to end in-process: post, bid, accept, execute, verify."""

    async def _demo():
        market = offline_market()
        await market.start(run_loops=False)

        console.print(Panel.fit(
            f"[bold]Job:[/] {description}\n[bold]Type:[/] {job_type}\n[bold]Budget:[/] ${budget:.2f}",
            title="[blue]Posting Job[/]",
        ))
        job = await market.jobs.create(job_type, description, Decimal(str(budget)))

        with Progress(SpinnerColumn(), TextColumn("Collecting bids..."), console=console):
            bids = await market.collect_demo_bids(job.job_id)

        if not bids:
            console.print(f"[yellow]No agents bid on {job_type} jobs within ${budget:.2f}.[/]")
            await market.stop()
            return

        selection = await market.coordinator.select(job.job_id)
        table = Table(title="Bids")
        table.add_column("Rank", style="cyan")
        table.add_column("Agent")
        table.add_column("Price", style="green")
        table.add_column("ETA")
        table.add_column("Confidence")
        table.add_column("Score", style="magenta")
        for ranked in selection.ranked:
            bid = ranked.bid
            table.add_row(
                str(ranked.rank),
                ranked.agent_name,
                f"${bid.price}",
                f"{bid.estimated_time}s",
                f"{bid.confidence:.0%}" if bid.confidence is not None else "-",
                f"{ranked.score:.3f}",
            )
        console.print(table)

        if not selection.accepted:
            console.print(f"[yellow]All bids rejected: {selection.reasoning}[/]")
            await market.stop()
            return

        job = await market.coordinator.accept_bid(job.job_id, selection.bid.bid_id, selection.reasoning)
        console.print(f"[green]Accepted[/] {selection.bid.agent_id} for ${selection.bid.price} (escrow {job.escrow_id})")

        with Progress(SpinnerColumn(), TextColumn("Agent working..."), console=console):
            job = await market.execute(job.job_id)

        if job.status == JobStatus.FAILED:
            console.print(f"[red]Execution failed:[/] {job.failure_reason}")
        else:
            verification, job = await market.coordinator.verify(job.job_id)
            style = "green" if verification.approved else "red"
            console.print(f"[{style}]Verification:[/] {verification.reasoning} (quality {verification.quality_score})")

        agent = await market.get_agent(job.accepted_bid.agent_id)
        mismatches = await market.ledger.reconcile()
        console.print(Panel.fit(
            f"[bold]Status:[/] {job.status.value}\n"
            f"[bold]Agent:[/] {agent.name} (balance ${agent.wallet_balance}, jobs {agent.jobs_completed})\n"
            f"[bold]Coordinator balance:[/] ${await market.ledger.balance(market.settings.coordinator_agent_id)}\n"
            f"[bold]Held in escrow:[/] ${await market.ledger.escrow_balance()}\n"
            f"[bold]Ledger:[/] {'balanced' if not mismatches else 'MISMATCH'}",
            title="Summary",
            border_style="green" if job.status == JobStatus.COMPLETED else "red",
        ))
        await market.stop()

    run_async(_demo())


# ============================================================
# Inspection
# ============================================================

@app.command()
def agents():
    """List agents and their wallets."""

    async def _list():
        market = offline_market()
        await market.start(run_loops=False)
        rows = await market.store.list_agents()
        await market.stop()

        table = Table(title="Agents")
        table.add_column("ID", style="cyan")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Balance", style="green")
        table.add_column("Jobs")
        table.add_column("Reputation")
        table.add_column("Status")
        for agent in rows:
            table.add_row(
                agent.agent_id,
                agent.name,
                agent.type,
                f"${agent.wallet_balance}",
                str(agent.jobs_completed),
                f"{agent.reputation_score:.1f}",
                agent.status.value,
            )
        console.print(table)

    run_async(_list())


@app.command()
def jobs(status: Optional[str] = typer.Option(None, help="Filter by status")):
    """List jobs."""

    async def _list():
        market = offline_market()
        await market.start(run_loops=False)
        if status:
            rows = await market.jobs.list_by_status(JobStatus(status))
        else:
            rows = await market.jobs.list_all()
        await market.stop()

        if not rows:
            console.print("[yellow]No jobs yet.[/]")
            return

        table = Table(title="Jobs")
        table.add_column("ID", style="cyan")
        table.add_column("Type")
        table.add_column("Budget", style="green")
        table.add_column("Status")
        table.add_column("Agent")
        table.add_column("Description")
        for job in rows:
            table.add_row(
                job.job_id,
                job.type,
                f"${job.budget_max}",
                job.status.value,
                job.accepted_bid.agent_id if job.accepted_bid else "-",
                job.description[:50],
            )
        console.print(table)

    run_async(_list())


@app.command()
def reconcile():
    """Check wallet balances against the transaction history."""

    async def _reconcile():
        market = offline_market()
        await market.start(run_loops=False)
        mismatches = await market.ledger.reconcile()
        held = await market.ledger.escrow_balance()
        await market.stop()

        if not mismatches:
            console.print(f"[bold green]Ledger balanced.[/] ${held} held in escrow.")
            return
        for wallet, (ledger_delta, balance_delta) in mismatches.items():
            console.print(f"[red]{wallet}[/]: ledger {ledger_delta} vs balance {balance_delta}")
        raise typer.Exit(code=1)

    run_async(_reconcile())


if __name__ == "__main__":
    app()
