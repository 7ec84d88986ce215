import asyncio
import logging
from pathlib import Path

import click
import questionary

from eventconsole.app import AdminConsole
from eventconsole.config import Config, load_config
from eventconsole.confirm import ConfirmationStateMachine, ConfirmRequest, DialogSurface
from eventconsole.remote import RemoteError, RemoteStore

logger = logging.getLogger(__name__)

ACTIONS = [
    "Select an Event",
    "Select a Schedule",
    "Show GL leaders for a group",
    "Issue participant tokens",
    "Delete an Event",
    "Reload Events",
    "Quit",
]


class TerminalDialog(DialogSurface):
    """Renders confirmations as questionary yes/no prompts."""

    def __init__(self):
        self.machine: ConfirmationStateMachine | None = None
        self._prompt: asyncio.Task | None = None

    def open(self, request: ConfirmRequest) -> None:
        message = f"{request.title}\n  {request.description}\n  {request.confirm_label}?"
        self._prompt = asyncio.ensure_future(
            questionary.confirm(message, default=False, qmark="").ask_async()
        )
        self._prompt.add_done_callback(self._answered)

    def close(self) -> None:
        prompt, self._prompt = self._prompt, None
        if prompt is not None and not prompt.done():
            prompt.cancel()

    def _answered(self, prompt: asyncio.Task) -> None:
        if prompt.cancelled() or self.machine is None:
            return
        if prompt.exception() is None and prompt.result():
            self.machine.accept()
        else:
            self.machine.cancel()


def load_config_option(ctx, param, value: Path) -> Config:
    if value is None:
        return None
    try:
        return load_config(value)
    except (FileNotFoundError, ValueError) as e:
        raise click.BadParameter(f"Invalid config: {e}")


def describe_selection(console: AdminConsole) -> str:
    state = console.state
    event = state.get_event(state.selected_event_id)
    if event is None:
        return "No Event selected"
    text = f"Event: {event.name or event.id}"
    if state.selected_schedule_id:
        schedule = console.selection.resolve_schedule_context(
            event.id, state.selected_schedule_id
        )
        label = getattr(schedule, "label", "") or getattr(schedule, "schedule_label", "")
        text += f" / Schedule: {label or state.selected_schedule_id}"
    return text


def print_events(console: AdminConsole) -> None:
    print(f"\n  Events")
    print(f"  ------\n")
    if not console.state.events:
        print("  (none)")
    for event in console.state.events:
        marker = "*" if event.id == console.state.selected_event_id else " "
        print(f"  {marker} {event.id}  {event.name}  ({len(event.schedules)} schedules)")
    print(f"\n  {describe_selection(console)}")


async def _choose_event(console: AdminConsole) -> None:
    if not console.state.events:
        print("\nNo Events available.")
        return
    choices = [
        questionary.Choice(f"{event.name or event.id} [{event.id}]", value=event.id)
        for event in console.state.events
    ]
    event_id = await questionary.select("\nEvent:", choices=choices, qmark="").ask_async()
    if event_id:
        console.selection.select_event(event_id)
        await console.assignments.load_for_event(event_id)


async def _choose_schedule(console: AdminConsole) -> None:
    event = console.state.get_event(console.state.selected_event_id)
    if event is None or not event.schedules:
        print("\nSelect an Event with schedules first.")
        return
    choices = [
        questionary.Choice(f"{schedule.label or schedule.id} [{schedule.id}]", value=schedule.id)
        for schedule in event.schedules
    ]
    schedule_id = await questionary.select("\nSchedule:", choices=choices, qmark="").ask_async()
    if schedule_id:
        console.selection.select_schedule(schedule_id)


async def _show_leaders(console: AdminConsole) -> None:
    event_id = console.state.selected_event_id
    if not event_id:
        print("\nSelect an Event first.")
        return
    group_key = await questionary.text("\nGroup (team id or label):", qmark="").ask_async()
    if group_key is None:
        return
    await console.assignments.load_for_event(event_id)
    leaders = console.assignments.collect_group_leaders(
        group_key, event_id=event_id, schedule_id=console.state.selected_schedule_id
    )
    print()
    if not leaders:
        print("  No leaders assigned.")
    for leader in leaders:
        print(f"  - {leader.name}" + (f"  ({leader.meta})" if leader.meta else ""))


async def _issue_tokens(console: AdminConsole) -> None:
    count = await questionary.text(
        "\nHow many tokens?", qmark="", validate=lambda val: val.isdigit()
    ).ask_async()
    if not count:
        return
    print()
    for token in await console.issue_tokens(int(count)):
        print(f"  {token}")


async def _delete_event(console: AdminConsole) -> None:
    if not console.state.events:
        print("\nNo Events available.")
        return
    choices = [
        questionary.Choice(f"{event.name or event.id} [{event.id}]", value=event.id)
        for event in console.state.events
    ]
    event_id = await questionary.select("\nDelete Event:", choices=choices, qmark="").ask_async()
    if not event_id:
        return
    if await console.delete_event(event_id):
        print(f"\n{console.state.status_message}")
    else:
        print("\nDeletion cancelled.")


async def _reload_events(console: AdminConsole) -> None:
    await console.load_events(preserve_selection=True, force=True)
    print_events(console)


HANDLERS = {
    "Select an Event": _choose_event,
    "Select a Schedule": _choose_schedule,
    "Show GL leaders for a group": _show_leaders,
    "Issue participant tokens": _issue_tokens,
    "Delete an Event": _delete_event,
    "Reload Events": _reload_events,
}

# deep-link focus hint -> action preselected in the first menu
FOCUS_ACTIONS = {
    "events": "Select an Event",
    "schedules": "Select a Schedule",
    "participants": "Show GL leaders for a group",
}


async def run_console(config: Config, deep_link: str = "", interactive: bool = True) -> None:
    """Load events, apply the deep link, then run the action menu."""
    dialog = TerminalDialog()
    store = RemoteStore(
        config.normalized_base_url(),
        auth_token=config.auth_token,
        timeout=config.request_timeout,
    )
    console = AdminConsole(config, store=store, surface=dialog)
    dialog.machine = console.confirmation
    try:
        if deep_link:
            console.selection.parse_deep_link(deep_link)
        await console.start()
        if console.state.status_variant == "error":
            print(f"\n{console.state.status_message}")
        print(f"\n{config.name}")
        print_events(console)

        default = FOCUS_ACTIONS.get(console.selection.consume_focus_target())
        while interactive:
            print(f"\n---")
            choice = await questionary.select(
                "\nAction:", choices=ACTIONS, default=default, qmark="", instruction=" "
            ).ask_async()
            default = None
            if choice is None or choice == "Quit":
                print(f"\nProgram terminated.\n")
                return
            console.clear_status()
            try:
                await HANDLERS[choice](console)
            except RemoteError as exc:
                # keep the previous state; the admin can retry from the menu
                print(f"\n{console.state.status_message or f'Error: {exc}'}")
            print(f"\n  {describe_selection(console)}")
    finally:
        await console.aclose()


@click.command(context_settings={"max_content_width": 120})
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False, readable=True, path_type=Path),
    callback=load_config_option,
    required=True,
    help="Path to console configuration file.",
)
@click.option(
    "--deep-link",
    default="",
    help="Query string selecting an event/schedule, e.g. 'eventId=E1&scheduleId=S1'.",
)
@click.option(
    "--list",
    "list_only",
    is_flag=True,
    help="Print the events and selection, then exit.",
)
@click.option("--verbose", is_flag=True, help="Enable debug logging.")
def cli(config, deep_link, list_only, verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run_console(config, deep_link, interactive=not list_only))
    except RemoteError as exc:
        raise click.ClickException(str(exc))


if __name__ == "__main__":
    cli()
