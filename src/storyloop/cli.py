"""CLI app definition: the 'go' workflow runner and the 'status' overview."""

import os
from typing import Annotated

import typer
from rich.text import Text
from rich.tree import Tree

from storyloop.agent import AgentOptions, resolve_agent_cmd
from storyloop.config import STATUS_APPROVED, load_environment
from storyloop.stories import find_story_by_status, list_stories, stories_dir
from storyloop.tasks import Task, count_tasks, get_next_task, get_uncompleted_tasks, parse_tasks_from_story
from storyloop.utils import console, resolve_directory
from storyloop.version import get_version
from storyloop.workflow import WorkflowSettings, run_continuous_workflow


def _version_callback(value: bool):
    if value:
        console.print(get_version())
        raise typer.Exit()


app = typer.Typer(
    help="Drive markdown stories from Draft to Done with an AI coding agent.",
    no_args_is_help=True,
)


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", "-v", help="Show version and exit.", callback=_version_callback, is_eager=True),
    ] = False,
) -> None:
    """Story lifecycle automation."""
    load_environment()


def _prompt_for_project_dir() -> str:
    answer = typer.prompt(
        "Enter project directory (or press Enter for current directory)",
        default="",
        show_default=False,
    )
    return answer.strip() or os.getcwd()


def _require_directory(project_dir: str) -> str:
    """Resolve the directory or exit with code 1 if it doesn't exist."""
    resolved = resolve_directory(project_dir)
    if not os.path.isdir(resolved):
        console.print(f"Error: Directory '{project_dir}' does not exist", style="bold red")
        raise typer.Exit(code=1)
    return resolved


# ============================================
# Commands
# ============================================


@app.command()
def go(
    project_dir: Annotated[str | None, typer.Argument(help="Project directory (prompted for if omitted).")] = None,
    model: Annotated[str, typer.Option(help="Agent model (defaults to $STORYLOOP_MODEL).")] = "",
    max_turns: Annotated[int | None, typer.Option(help="Maximum agent turns per instruction.")] = None,
    verbose: Annotated[bool, typer.Option(help="Pass --verbose to the agent.")] = False,
    draft: Annotated[bool, typer.Option(help="Ask the agent for a new draft when none exists.")] = True,
) -> None:
    """Run the story workflow until three consecutive checks find no work."""
    directory = _require_directory(project_dir or _prompt_for_project_dir())

    try:
        resolve_agent_cmd()
    except SystemExit as e:
        console.print(f"Error: {e}", style="bold red")
        raise typer.Exit(code=1)

    console.print(f"Using project directory: {directory}")

    settings = WorkflowSettings(
        project_dir=directory,
        agent_options=AgentOptions(model=model, max_turns=max_turns, verbose=verbose),
        create_drafts=draft,
    )
    try:
        run_continuous_workflow(settings)
    except Exception as e:
        console.print(f"Workflow failed: {e}", style="bold red")
        raise typer.Exit(code=1)


def _add_task_nodes(parent: Tree, tasks: list[Task]) -> None:
    for task in tasks:
        box = "[x]" if task.completed else "[ ]"
        label = Text(f"{task.id} {box} {task.name}", style="dim" if task.completed else "")
        node = parent.add(label)
        _add_task_nodes(node, task.subtasks)


@app.command()
def status(
    project_dir: Annotated[str, typer.Argument(help="Project directory.")] = ".",
) -> None:
    """Quick view of where things stand: every story's status and the open tasks."""
    directory = _require_directory(project_dir)
    stories = list_stories(directory)

    console.print()
    if not stories:
        console.print(f"No stories found in {stories_dir(directory)}", style="yellow")
        return

    console.print("=== STORIES ===", style="bold magenta")
    for story in stories:
        done, total = count_tasks(parse_tasks_from_story(story.content))
        console.print(f"  {story.status or '(no status)':<18} {story.name}  [{done}/{total} tasks]", markup=False)

    approved = find_story_by_status(directory, STATUS_APPROVED)
    if approved is None:
        console.print()
        return

    tasks = parse_tasks_from_story(approved.content)
    console.print()
    console.print(f"=== IN PROGRESS: {approved.name} ===", style="bold cyan")
    next_task = get_next_task(tasks)
    if next_task is None:
        console.print("All tasks complete; ready for review.", style="green")
    else:
        console.print(f"Next task: {next_task.id} {next_task.name}", markup=False)

    uncompleted = get_uncompleted_tasks(tasks)
    if uncompleted:
        tree = Tree("Open tasks")
        _add_task_nodes(tree, uncompleted)
        console.print(tree)
    console.print()
