"""
chatturn: compose chat requests and stream turns from the terminal.

Commands: chatturn compose FILE, chatturn chat MESSAGE
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .composer import ComposeRequest, ComposedMessage, PageContext, compose_messages
from .config import Config
from .errors import ChatTurnError
from .history import ConversationNode, ConversationTree
from .llm import LLMAdapter
from .logger import setup_logger
from .prompts import (
    FOLLOW_CURRENT_MODEL,
    PromptTemplate,
    match_url_rule,
    prompts_from_mapping,
    replace_placeholders,
    resolve_prompt_model,
)
from .stream_renderer import TerminalRenderer

console = Console()
BANNER = (
    f"[bold #7FA6D9]chatturn[/bold #7FA6D9] "
    f"[dim]v{__version__} · request composer[/dim]"
)


def load_conversation_file(path: Path) -> Tuple[ConversationTree, Optional[str], Dict[str, Any]]:
    """Read a YAML/JSON conversation file.

    ``messages`` without ``parent_id`` form one linear chain; with parent
    links they form a tree whose active leaf is ``active`` (or the newest
    leaf). Returns the tree, the active leaf id and the remaining settings.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if isinstance(data, list):
        data = {"messages": data}
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must hold a mapping or a list of messages")

    raw_messages = [m for m in data.get("messages") or [] if isinstance(m, dict)]
    nodes = [ConversationNode.from_dict(m) for m in raw_messages]
    if not any("parent_id" in m for m in raw_messages):
        for prev, node in zip(nodes, nodes[1:]):
            node.parent_id = prev.id

    tree = ConversationTree(nodes)
    for node in tree:
        parent = tree.get(node.parent_id)
        if parent is not None and node.id not in parent.children:
            parent.children.append(node.id)
    if data.get("root") in tree:
        tree.root_id = data["root"]
    leaf = data.get("active") if data.get("active") in tree else tree.latest_leaf()
    return tree, leaf, data


def _build_request(data: Dict[str, Any], chain: List[ConversationNode], config: Config,
                   system_prompt: Optional[str]) -> ComposeRequest:
    page = data.get("page")
    page_context = None
    if isinstance(page, dict):
        page_context = PageContext(
            title=str(page.get("title") or ""),
            url=str(page.get("url") or ""),
            content=str(page.get("content") or ""),
        )

    prompts = prompts_from_mapping(data.get("prompts"))
    if system_prompt is not None:
        prompts["system"] = PromptTemplate(prompt=system_prompt)
    elif page_context is not None:
        rule_prompt = match_url_rule(page_context.url, "system", data.get("url_rules") or [])
        if rule_prompt is not None:
            model = prompts["system"].model if "system" in prompts else FOLLOW_CURRENT_MODEL
            prompts["system"] = PromptTemplate(rule_prompt, model)
    if "system" in prompts:
        template = prompts["system"]
        prompts["system"] = PromptTemplate(replace_placeholders(template.prompt), template.model)

    injected = data.get("injected") or []
    return ComposeRequest(
        prompts=prompts,
        injected_system_messages=[str(m) for m in injected] if isinstance(injected, list) else [],
        page_context=page_context,
        image_contains_screenshot=bool(data.get("screenshot", False)),
        conversation_chain=chain,
        **config.compose_limits(),
    )


def _print_messages(messages: List[ComposedMessage], as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps([m.to_dict() for m in messages], ensure_ascii=False, indent=2))
        return
    table = Table(show_header=True, header_style="bold #7FA6D9")
    table.add_column("#", justify="right", style="dim")
    table.add_column("role")
    table.add_column("content", overflow="fold")
    table.add_column("signature", style="dim")
    for idx, msg in enumerate(messages, 1):
        content = msg.content if isinstance(msg.content, str) else json.dumps(msg.content)
        signature = msg.signature_source or ""
        table.add_row(str(idx), msg.role, content, signature)
    console.print(table)


@click.group(invoke_without_command=True)
@click.option("--project-dir", "-d", default=".", help="Directory holding .chatturn.yml")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--log-file", default=None, type=click.Path(dir_okay=False, path_type=Path),
              help="Also write logs here (default: $CHATTURN_LOG_FILE)")
@click.pass_context
def cli(ctx, project_dir, verbose, log_file):
    """Compose chat requests and stream turns."""
    config = Config.load(project_dir)
    if verbose:
        config.verbose = True
    setup_logger("chatturn", verbose=config.verbose, log_file=log_file)
    ctx.obj = config
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("conversation", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--system-prompt", "-s", default=None, help="Override the system template")
@click.option("--max-user", type=int, default=None, help="User turn ceiling")
@click.option("--max-assistant", type=int, default=None, help="Assistant turn ceiling")
@click.option("--max-history", type=int, default=None, help="Legacy total ceiling")
@click.option("--no-history", is_flag=True, help="Send only the latest turn")
@click.option("--regenerate", "regenerate_id", default=None, help="Compose for regenerating up to this node id")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_obj
def compose(config, conversation, system_prompt, max_user, max_assistant, max_history,
            no_history, regenerate_id, as_json):
    """Print the messages that would be sent for CONVERSATION."""
    if max_user is not None:
        config.max_user_history = max_user
    if max_assistant is not None:
        config.max_assistant_history = max_assistant
    if max_history is not None:
        config.max_history = max_history
    if no_history:
        config.send_history = False

    tree, leaf, data = load_conversation_file(conversation)
    request = _build_request(data, tree.chain(leaf), config, system_prompt)
    if regenerate_id:
        request.regenerate_mode = True
        request.target_message_id = regenerate_id
    _print_messages(compose_messages(request), as_json)


@cli.command()
@click.argument("message")
@click.option("--model", "-m", default=None, help="Model preset name")
@click.option("--file", "-f", "conversation", default=None,
              type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Conversation to continue")
@click.option("--system-prompt", "-s", default=None, help="Override the system template")
@click.option("--hide-reasoning", is_flag=True, help="Do not show the thinking spinner")
@click.option("--save", "save_path", default=None, type=click.Path(dir_okay=False, path_type=Path),
              help="Write the updated conversation here")
@click.pass_obj
def chat(config, message, model, conversation, system_prompt, hide_reasoning, save_path):
    """Send MESSAGE as a new user turn and stream the reply."""
    console.print(BANNER)
    if model:
        try:
            config.set_value("active-model", model)
        except ChatTurnError as e:
            raise click.BadParameter(str(e), param_hint="--model")
    preset = config.get_active_preset()

    if conversation:
        tree, leaf, data = load_conversation_file(conversation)
    else:
        tree, leaf, data = ConversationTree(), None, {}
    user_node = tree.append("user", message, parent_id=leaf)

    request = _build_request(data, tree.chain(user_node.id), config, system_prompt)
    messages = compose_messages(request)

    llm_kwargs = preset.get_llm_kwargs()
    llm_kwargs["model"] = resolve_prompt_model(request.prompts.get("system"), preset.model)
    llm = LLMAdapter(**llm_kwargs, use_streaming=config.use_streaming,
                     send_signatures=config.send_signatures,
                     overlap_window=config.stream_overlap_window)
    renderer = TerminalRenderer(console, show_reasoning=not hide_reasoning)
    try:
        result = llm.run_turn(messages, on_transition=renderer)
    except ChatTurnError as e:
        renderer.finish()
        console.print(f"  [red]✗ {e}[/red]")
        raise SystemExit(1)
    renderer.finish(result.thoughts)

    reply = tree.append("assistant", result.answer, parent_id=user_node.id,
                        thoughts_raw=result.thoughts)
    reply.attach_reasoning(result.reasoning, llm.model)

    if save_path is not None:
        data = {key: value for key, value in data.items() if key not in ("messages", "root", "active")}
        data.update(tree.to_dict())
        data["active"] = reply.id
        with open(save_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, allow_unicode=True, sort_keys=False)
        console.print(f"  [dim]saved {len(tree)} messages to {save_path}[/dim]")


def main():
    cli()


if __name__ == "__main__":
    main()
