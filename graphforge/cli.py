import json
from pathlib import Path

import click


@click.group()
def main() -> None:
    """graphforge - compile node graphs and run shell tools in sandboxed runtimes."""
    from graphforge.engine.log import setup_logging_from_settings
    from graphforge.engine.settings import get_settings

    setup_logging_from_settings(get_settings())


@main.command()
@click.option("--kind", default=None, help="Only list templates of this node kind.")
def templates(kind: str | None) -> None:
    """List the registered node templates."""
    from graphforge.engine.app import create_graphforge
    from graphforge.engine.models.enums import NodeKind

    forge = create_graphforge()
    registry = forge.template_registry
    items = registry.get_templates_by_kind(NodeKind(kind)) if kind else registry.all_templates()
    for template in items:
        click.echo(f"{template.id:<18} {template.kind:<12} {template.description}")


@main.command(name="compile")
@click.argument("graph_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tool", "tool_node", default=None, help="Tool node to run --command through.")
@click.option("--command", default=None, help="Shell command to run through the tool node.")
@click.option("--thread-id", default="cli", show_default=True, help="Thread id of the execution.")
def compile_graph(graph_file: Path, tool_node: str | None, command: str | None, thread_id: str) -> None:
    """Compile GRAPH_FILE (JSON), optionally run a command, then tear it down."""
    import anyio

    from graphforge.engine.app import lifespan
    from graphforge.engine.context import ExecutionContext
    from graphforge.engine.models.graph import GraphDefinition

    definition = GraphDefinition.model_validate(json.loads(graph_file.read_text()))
    if command and not tool_node:
        raise click.UsageError("--command requires --tool")

    async def _run() -> int:
        async with lifespan() as forge:
            compiled = await forge.compiler.compile(definition.graph, definition.metadata)
            for node in compiled.nodes.values():
                click.echo(f"{node.node_id:<20} {node.template_id:<18} inputs={node.inputs} outputs={node.outputs}")
            if not command:
                return 0

            entry = forge.graph_registry.get_node(compiled.graph_id, tool_node)
            if entry is None or not entry.instance:
                raise click.UsageError(f"'{tool_node}' is not a tool node of graph {compiled.graph_id}")
            ctx = ExecutionContext(thread_id=thread_id, graph_id=compiled.graph_id, node_id=tool_node)
            forge.thread_registry.register(ctx)
            try:
                result = await entry.instance[0].invoke({"purpose": "cli", "command": command}, ctx)
            finally:
                forge.thread_registry.unregister(ctx)
            click.echo(result.output.stdout, nl=False)
            click.echo(result.output.stderr, nl=False, err=True)
            return result.output.exit_code

    raise SystemExit(anyio.run(_run))


@main.command(name="exec")
@click.argument("command")
@click.option("--image", default=None, help="Runtime image (default: GRAPHFORGE_RUNTIME_IMAGE).")
@click.option("--timeout-ms", default=None, type=int, help="Absolute timeout in milliseconds.")
@click.option("--tail-timeout-ms", default=None, type=int, help="Timeout without output in milliseconds.")
@click.option("--dind", is_flag=True, default=False, help="Start a Docker-in-Docker sidecar.")
def exec_command(
    command: str,
    image: str | None,
    timeout_ms: int | None,
    tail_timeout_ms: int | None,
    dind: bool,
) -> None:
    """Run COMMAND in an ad-hoc docker runtime and remove it afterwards."""
    import anyio

    from graphforge.engine.models.runtime import RuntimeExecParams, RuntimeStartParams
    from graphforge.engine.runtime.docker import DockerRuntime

    async def _run() -> int:
        runtime = DockerRuntime()
        try:
            await runtime.start(RuntimeStartParams(image=image, enable_dind=dind))
            result = await runtime.exec(
                RuntimeExecParams(cmd=command, timeout_ms=timeout_ms, tail_timeout_ms=tail_timeout_ms),
            )
        finally:
            await runtime.stop()
        click.echo(result.stdout, nl=False)
        click.echo(result.stderr, nl=False, err=True)
        return result.exit_code

    raise SystemExit(anyio.run(_run))


@main.command()
@click.option("--graph-id", required=True, help="Graph whose containers should be removed.")
@click.option("--node-id", default=None, help="Restrict to one runtime node.")
def cleanup(graph_id: str, node_id: str | None) -> None:
    """Remove runtime containers left behind for a graph (or one of its nodes)."""
    import anyio
    from anyio import to_thread

    from graphforge.engine.models.runtime import LABEL_GRAPH_ID
    from graphforge.engine.runtime.docker import create_docker_client, remove_containers_by_labels
    from graphforge.engine.runtime.provider import RuntimeProvider
    from graphforge.engine.settings import get_settings

    async def _run() -> int:
        if node_id:
            return await RuntimeProvider().cleanup_by_node(graph_id, node_id)
        client = await to_thread.run_sync(create_docker_client, get_settings())
        return await remove_containers_by_labels(client, {LABEL_GRAPH_ID: graph_id})

    removed = anyio.run(_run)
    click.echo(f"Removed {removed} container(s)")
