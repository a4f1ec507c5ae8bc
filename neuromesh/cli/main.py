"""neuromesh CLI — operator commands for the local station.

`neuromesh status`, `neuromesh evolve`, `neuromesh pending`, etc. Every
command is a thin wrapper over one neuromesh.api handler; `--json`
prints the handler's raw result.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import orjson
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from neuromesh import api

console = Console()

app = typer.Typer(
    name="neuromesh",
    help="neuromesh -- a self-maturing capability graph shared across stations.",
    no_args_is_help=True,
)


def _call(handler, *args, **kwargs) -> dict:
    from neuromesh.cli.context import NeuromeshContext, run_async

    ctx = NeuromeshContext.get()

    async def _run():
        station = await ctx.ensure_station()
        return await handler(station, *args, **kwargs)

    return run_async(_run())


def _print_json(data: dict) -> None:
    console.print_json(orjson.dumps(data).decode())


@app.command("status")
def status(as_json: bool = typer.Option(False, "--json", help="Print raw JSON")):
    """Show graph and station status."""
    data = _call(api.neural_status)
    if as_json:
        _print_json(data)
        return

    connected = "[green]yes[/green]" if data["store_connected"] else "[red]no[/red]"
    console.print(Panel(
        f"[bold]Station {data['station_id']}[/bold]\n\n"
        f"Phase:        {data['phase']}\n"
        f"Nodes:        {data['total_nodes']} ({data['owned_nodes']} owned, {data['pruned_nodes']} pruned)\n"
        f"Edges:        {data['total_edges']} ({data['myelinated_edges']} myelinated)\n"
        f"Executions:   {data['total_executions']}\n"
        f"Avg fitness:  {data['avg_fitness']}\n"
        f"Store:        {connected}\n"
        f"Replication:  {data['replication_mode']} ({data['queued_deltas']} queued)\n"
        f"Consensus:    {data['pending_consensus']} pending\n"
        f"Last pass:    {(data['last_pass_at'] or 'never')[:19].replace('T', ' ')}",
        title="Neural Graph Status",
        border_style="cyan",
    ))


@app.command("topology")
def topology(as_json: bool = typer.Option(False, "--json", help="Print raw JSON")):
    """List nodes and edges of the local view."""
    data = _call(api.neural_topology)
    if as_json:
        _print_json(data)
        return

    nodes = Table(title=f"Nodes (phase {data['phase']})")
    nodes.add_column("Node", style="cyan")
    nodes.add_column("Type", style="dim")
    nodes.add_column("Owner", style="blue")
    nodes.add_column("Status")
    nodes.add_column("Fitness", style="green", justify="right")
    nodes.add_column("Activations", justify="right")
    for n in sorted(data["nodes"], key=lambda n: -n["fitness_score"]):
        nodes.add_row(
            n["node_id"], n["node_type"], n["owner_station_id"], n["status"],
            f"{n['fitness_score']:.1f}", str(n["activation_count"]),
        )
    console.print(nodes)

    edges = Table(title="Edges")
    edges.add_column("Edge", style="cyan")
    edges.add_column("Type", style="dim")
    edges.add_column("Weight", style="green", justify="right")
    edges.add_column("Myelinated", style="yellow", max_width=10)
    edges.add_column("Activations", justify="right")
    for e in sorted(data["edges"], key=lambda e: -e["weight"]):
        edges.add_row(
            e["edge_id"], e["edge_type"], f"{e['weight']:.2f}",
            "yes" if e["myelinated"] else "", str(e["activation_count"]),
        )
    console.print(edges)


@app.command("evolve")
def evolve(as_json: bool = typer.Option(False, "--json", help="Print raw JSON")):
    """Run one maturation pass now."""
    data = _call(api.neural_evolve)
    if as_json:
        _print_json(data)
        return
    if data["skipped"]:
        console.print("[yellow]A maturation pass is already running.[/yellow]")
        return

    console.print(Panel(
        f"Phase:              {data['phase']}"
        f"{' [bold green](transition)[/bold green]' if data['phase_transition'] else ''}\n"
        f"Nodes rescored:     {data['nodes_updated']}\n"
        f"Proposals:          {len(data['generated'])}\n"
        f"Applied:            {len(data['applied'])}\n"
        f"Failed:             {len(data['failed'])}\n"
        f"Pending consensus:  {len(data['pending_consensus'])}\n"
        f"Awaiting approval:  {len(data['awaiting_approval'])}",
        title="Maturation Pass",
        border_style="cyan",
    ))
    for p in data["applied"]:
        console.print(f"  [green]+[/green] {p['type']} [cyan]{p['target_id']}[/cyan] [dim]{p['reason']}[/dim]")
    for f in data["failed"]:
        console.print(f"  [red]x[/red] {f['type']} [cyan]{f['target_id']}[/cyan] [dim]{f['error']}[/dim]")


@app.command("query")
def query(
    task: str = typer.Argument("", help="Free-text task description"),
    capability: str = typer.Option("", "--capability", "-c", help="Exact capability name"),
    limit: int = typer.Option(5, "--limit", "-n", help="Max results"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Find the fittest nodes for a task or capability."""
    data = _call(api.neural_query, capability=capability, task=task, limit=limit)
    if as_json:
        _print_json(data)
        return
    if not data["matches"]:
        console.print("[dim]No matching nodes.[/dim]")
        return

    table = Table(title="Query Matches")
    table.add_column("Node", style="cyan")
    table.add_column("Owner", style="blue")
    table.add_column("Fitness", style="green", justify="right")
    table.add_column("Capabilities", style="dim")
    for m in data["matches"]:
        table.add_row(m["node_id"], m["owner_station_id"], f"{m['fitness_score']:.1f}", ", ".join(m["capabilities"][:4]))
    console.print(table)


@app.command("pending")
def pending(as_json: bool = typer.Option(False, "--json", help="Print raw JSON")):
    """Show mutations awaiting approval or consensus."""
    data = _call(api.neural_pending)
    if as_json:
        _print_json(data)
        return
    if not data["events"] and not data["consensus"]:
        console.print("[dim]Nothing pending.[/dim]")
        return

    table = Table(title="Pending Mutations")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type", style="yellow")
    table.add_column("Target", style="white")
    table.add_column("Station", style="blue")
    table.add_column("Reason", style="dim")
    for e in data["events"]:
        table.add_row(e["id"], e["event_type"], e["target_id"], e["station_id"], e["reason"])
    console.print(table)

    for c in data["consensus"]:
        votes = ", ".join(f"{s}={v}" for s, v in c["votes"].items()) or "no votes"
        console.print(
            f"[cyan]{c['proposal_id']}[/cyan] expires {c['expires_at']} "
            f"stations {', '.join(c['affected_station_ids'])} [dim]({votes})[/dim]"
        )


@app.command("vote")
def vote(
    proposal_id: str = typer.Argument(help="Consensus proposal ID"),
    choice: str = typer.Argument(help="approve or reject"),
    station: str = typer.Option("", "--station", "-s", help="Vote on behalf of this station"),
):
    """Cast a consensus vote."""
    if api.parse_vote(choice) is None:
        console.print("[red]Vote must be 'approve' or 'reject'.[/red]")
        raise typer.Exit(1)
    data = _call(api.neural_vote, proposal_id, choice.lower(), voter_station_id=station)
    if data["accepted"]:
        console.print(f"[green]Vote recorded:[/green] {data['station_id']} -> {data['vote']}")
    else:
        console.print(f"[red]Vote not accepted for {proposal_id}.[/red]")
        raise typer.Exit(1)


@app.command("approve")
def approve(event_id: str = typer.Argument(help="Pending evolution event ID")):
    """Approve a pending mutation."""
    data = _call(api.neural_approve, event_id)
    if not data["approved"]:
        console.print(f"[red]No pending mutation {event_id}, or it could not be applied.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Approved {event_id}[/green]")


@app.command("reject")
def reject(event_id: str = typer.Argument(help="Pending evolution event ID")):
    """Reject a pending mutation."""
    data = _call(api.neural_reject, event_id)
    if not data["rejected"]:
        console.print(f"[red]No pending mutation {event_id}.[/red]")
        raise typer.Exit(1)
    console.print(f"[yellow]Rejected {event_id}[/yellow]")


@app.command("genesis")
def genesis():
    """Seed the initial station and capability topology."""
    data = _call(api.neural_genesis)
    console.print(
        f"[green]Genesis complete:[/green] {data['nodes_created']} nodes, "
        f"{data['edges_created']} edges created"
    )


@app.command("events")
def events(limit: int = typer.Option(20, "--limit", "-n", help="Max events")):
    """Show the evolution audit log."""
    data = _call(api.neural_events, limit=limit)
    if not data["events"]:
        console.print("[dim]No evolution events yet.[/dim]")
        return

    table = Table(title="Evolution Events")
    table.add_column("When", style="dim", no_wrap=True, max_width=19)
    table.add_column("Type", style="yellow")
    table.add_column("Target", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("By", style="blue")
    table.add_column("Reason", style="white")
    for e in data["events"]:
        table.add_row(
            e["created_at"][:16].replace("T", " "), e["event_type"], e["target_id"],
            e["approval_status"], e["triggered_by"], e["reason"][:60],
        )
    console.print(table)


@app.command("executions")
def executions(
    limit: int = typer.Option(20, "--limit", "-n", help="Max records"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """Show recent execution records of this station."""
    data = _call(api.neural_executions, limit=limit)
    if as_json:
        _print_json(data)
        return
    if not data["executions"]:
        console.print("[dim]No executions recorded yet.[/dim]")
        return

    table = Table(title="Executions")
    table.add_column("When", style="dim", no_wrap=True, max_width=19)
    table.add_column("Task", style="cyan")
    table.add_column("Nodes", style="white")
    table.add_column("OK", justify="center")
    table.add_column("Latency", style="green", justify="right")
    for r in data["executions"]:
        table.add_row(
            r["created_at"][:16].replace("T", " "), r["task_type"] or "-",
            " > ".join(r["nodes_visited"]), "[green]✓[/green]" if r["success"] else "[red]✗[/red]",
            f"{r['total_latency_ms']:.0f}ms",
        )
    console.print(table)


@app.command("record")
def record(path: Path = typer.Argument(help="JSON file holding one execution record")):
    """Ingest an execution record from a JSON file."""
    payload = orjson.loads(path.read_bytes())
    data = _call(api.neural_record, payload)
    console.print(
        f"[green]Recorded {data['execution_id']}[/green] "
        f"({len(data['weights_changed'])} edge weights changed)"
    )


@app.command("daemon")
def daemon():
    """Run the maturation daemon in the foreground until interrupted."""
    from neuromesh.cli.context import NeuromeshContext, run_async

    ctx = NeuromeshContext.get()

    async def _serve():
        station = await ctx.ensure_station()

        async def _on_pass(event):
            d = event.data
            console.print(
                f"[dim]{event.timestamp:%H:%M:%S}[/dim] pass on {event.source}: phase {d['phase']}, "
                f"{d['applied']} applied, {d['pending_consensus']} to consensus, {d['awaiting_approval']} awaiting approval"
            )

        async def _on_consensus(event):
            console.print(f"[yellow]{event.topic}[/yellow] {event.data.get('proposal_id', '')}")

        station.event_bus.subscribe("maturation.cycle_completed", _on_pass)
        station.event_bus.subscribe("consensus.*", _on_consensus)
        await station.start()
        console.print(f"[green]Maturation daemon running for {station.station_id}[/green] [dim](Ctrl+C to stop)[/dim]")
        try:
            while station.daemon.is_running:
                await asyncio.sleep(1)
        finally:
            await station.stop()

    try:
        run_async(_serve())
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


@app.command("version")
def version_cmd():
    """Show neuromesh version."""
    from neuromesh import __version__
    console.print(f"neuromesh v{__version__}")
