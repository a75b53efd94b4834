# -*- coding: utf-8 -*-
"""Textual UI for CipherDiary.

This file contains ONLY the UI: screens, modals, and the App wrapper. The
screen shown follows the auth stage: setup, unlock, token refresh, or the
diary editor once ready.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional
import asyncio
import logging

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal
from textual.screen import ModalScreen, Screen
from textual.widgets import (
    Button,
    Checkbox,
    Footer,
    Header,
    Input,
    Label,
    ListItem,
    ListView,
    Static,
    TextArea,
)

from .archive import export_archive, import_archive
from .auth import Stage
from .conflict import ConflictState, Resolution
from .errors import DiaryError
from .logic import (
    DiaryEditor,
    build_engine,
    build_session,
    entry_id_for,
    init_db,
    load_config,
    log_path,
    today_entry_id,
)
from .sync import PullOutcome, PushOutcome, SyncStatus

logger = logging.getLogger(__name__)

APP_CSS = """
#modal-card {
    width: 90;
    height: auto;
    border: round $accent;
    padding: 1 2;
    align: center middle;
}
.title { text-style: bold; padding-bottom: 1; }
.hint { color: $text-muted; }
#editor { height: 20; }
#conflict-row TextArea { width: 1fr; height: 12; }
"""


# ---------------------------------------------------------------------------
# Modals
# ---------------------------------------------------------------------------

class ChangePasswordModal(ModalScreen[None]):
    """Rotate the master password."""

    def compose(self) -> ComposeResult:
        yield Container(
            Static("CHANGE PASSWORD", classes="title"),
            Input(placeholder="current password", password=True, id="cur"),
            Input(placeholder="new password", password=True, id="new"),
            Input(placeholder="confirm", password=True, id="conf"),
            Horizontal(Button("Change", id="change", classes="-primary"), Button("Close", id="close")),
            id="modal-card",
        )

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "change":
            cur = self.query_one("#cur", Input).value
            new = self.query_one("#new", Input).value
            if new != self.query_one("#conf", Input).value:
                self.app.notify("Passwords do not match")
                return
            try:
                await self.app.session.change_password(cur, new)
                self.app.notify("Password updated.")
                self.app.pop_screen()
            except DiaryError as exc:
                self.app.notify(str(exc))
        elif event.button.id == "close":
            self.app.pop_screen()


class SettingsModal(ModalScreen[bool]):
    """Repository, branch and an optional replacement token."""

    def compose(self) -> ComposeResult:
        cfg = self.app.session.state.config
        yield Container(
            Static("SETTINGS", classes="title"),
            Input(value=f"{cfg.owner}/{cfg.repo}", placeholder="owner/repo", id="repo"),
            Input(value=cfg.branch, placeholder="branch", id="branch"),
            Input(placeholder="new access token (optional)", password=True, id="token"),
            Input(placeholder="master password (needed for a new token)", password=True, id="p"),
            Horizontal(Button("Save", id="save", classes="-primary"), Button("Close", id="close")),
            id="modal-card",
        )

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "save":
            try:
                await self.app.session.update_settings(
                    self.query_one("#repo", Input).value,
                    self.query_one("#branch", Input).value,
                    token=self.query_one("#token", Input).value or None,
                    password=self.query_one("#p", Input).value or None,
                )
                await self.app.engine.load()
                self.app.notify("Settings saved.")
                self.dismiss(True)
            except DiaryError as exc:
                self.app.notify(str(exc))
        elif event.button.id == "close":
            self.dismiss(False)


class ImportModal(ModalScreen[bool]):
    """Import ``YYYY-MM-DD.md`` / ``YYYY-summary.md`` files or an export zip."""

    def compose(self) -> ComposeResult:
        yield Container(
            Static("IMPORT", classes="title"),
            Input(placeholder="path to a .zip, a folder or a file", id="path"),
            Checkbox("Overwrite entries that already exist", id="overwrite"),
            Horizontal(Button("Import", id="import", classes="-primary"), Button("Close", id="close")),
            id="modal-card",
        )

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "import":
            try:
                result = await import_archive(
                    Path(self.query_one("#path", Input).value.strip()),
                    overwrite=self.query_one("#overwrite", Checkbox).value,
                    engine=self.app.engine,
                    on_write=self.app.editor.remember,
                )
            except DiaryError as exc:
                self.app.notify(str(exc))
                return
            message = (
                f"{len(result.succeeded)} imported, {len(result.skipped)} skipped, "
                f"{len(result.invalid) + len(result.failed)} rejected"
            )
            if result.upload is not None:
                message += f"; {len(result.upload.succeeded)} uploaded, {len(result.upload.failed)} upload failures"
            self.app.notify(message)
            self.dismiss(True)
        elif event.button.id == "close":
            self.dismiss(False)


class ConflictModal(ModalScreen[Optional[str]]):
    """Side-by-side local/remote with a merge buffer.

    Dismisses with the entry id when the local copy may have changed.
    """

    def __init__(self, conflict: ConflictState) -> None:
        super().__init__()
        self.conflict = conflict

    def compose(self) -> ComposeResult:
        c = self.conflict
        widgets = [Static(f"CONFLICT: {c.entry_id}", classes="title")]
        if c.blocked:
            widgets.append(Static(c.message + ". Unlock with the key it was written with, then retry.", classes="hint"))
            widgets.append(Horizontal(Button("Retry", id="retry", classes="-primary"), Button("Dismiss", id="dismiss")))
        else:
            widgets.append(Horizontal(
                TextArea(c.local_content, id="local", read_only=True),
                TextArea(c.remote_content or "", id="remote", read_only=True),
                id="conflict-row",
            ))
            widgets.append(Static("Merge:", classes="hint"))
            widgets.append(TextArea(c.merge_buffer, id="merge"))
            widgets.append(Horizontal(
                Button("Keep Local", id=Resolution.KEEP_LOCAL.value),
                Button("Keep Remote", id=Resolution.KEEP_REMOTE.value),
                Button("Save Merge", id=Resolution.MERGE.value, classes="-primary"),
                Button("Dismiss", id="dismiss"),
            ))
        yield Container(*widgets, id="modal-card")

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        bid = event.button.id or ""
        engine = self.app.engine
        if bid == "dismiss":
            engine.dismiss_conflict(self.conflict.entry_id)
            self.dismiss(None)
            return
        resolution = Resolution.KEEP_LOCAL if bid == "retry" else Resolution(bid)
        merged = self.query_one("#merge", TextArea).text if resolution is Resolution.MERGE else None
        try:
            result = await engine.resolve_conflict(self.conflict, resolution, merged)
        except DiaryError as exc:
            self.app.notify(str(exc))
            return
        if result.outcome is PushOutcome.CONFLICT and result.conflict is not None:
            self.app.notify("Remote changed again, review the new version")
            self.dismiss(self.conflict.entry_id)
            self.app.push_screen(ConflictModal(result.conflict), self.app.after_conflict)
            return
        self.app.notify(result.message or f"Resolved {self.conflict.entry_id}")
        self.dismiss(self.conflict.entry_id)


# ---------------------------------------------------------------------------
# Auth screens
# ---------------------------------------------------------------------------

class SetupScreen(Screen):
    """First run: repository, token and master password."""

    BINDINGS = [Binding("escape", "app.quit", "Quit")]

    def compose(self) -> ComposeResult:
        yield Header()
        yield Container(
            Static("SETUP", classes="title"),
            Input(placeholder="owner/repo or https://host/owner/repo", id="repo"),
            Input(value="master", placeholder="branch", id="branch"),
            Input(placeholder="access token", password=True, id="token"),
            Input(placeholder="master password", password=True, id="p"),
            Input(placeholder="confirm", password=True, id="c"),
            Static("8+ characters with a letter and a digit.", classes="hint"),
            Horizontal(Button("Create", id="create", classes="-primary"), Button("Exit", id="exit")),
            id="modal-card",
        )
        yield Footer()

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "create":
            p = self.query_one("#p", Input).value
            if p != self.query_one("#c", Input).value:
                self.app.notify("Passwords do not match")
                return
            try:
                await self.app.session.setup(
                    self.query_one("#repo", Input).value,
                    self.query_one("#token", Input).value,
                    p,
                    branch=self.query_one("#branch", Input).value,
                )
            except DiaryError as exc:
                self.app.notify(str(exc))
                return
            await self.app.route()
        elif event.button.id == "exit":
            self.app.exit()


class UnlockScreen(Screen):
    """Master password prompt."""

    BINDINGS = [Binding("escape", "app.quit", "Quit")]

    def compose(self) -> ComposeResult:
        state = self.app.session.state
        yield Header()
        yield Container(
            Static("UNLOCK", classes="title"),
            Static(state.error or "", classes="hint", id="err"),
            Input(placeholder="master password", password=True, id="password"),
            Horizontal(Button("Unlock", id="unlock", classes="-primary"), Button("Exit", id="exit")),
            id="modal-card",
        )
        yield Footer()

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        await self._unlock()

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "unlock":
            await self._unlock()
        elif event.button.id == "exit":
            self.app.exit()

    async def _unlock(self) -> None:
        field = self.query_one("#password", Input)
        try:
            await self.app.session.unlock(field.value)
        except DiaryError as exc:
            field.value = ""
            self.app.notify(str(exc))
            return
        await self.app.route()


class TokenRefreshScreen(Screen):
    """Stored token unreadable: ask for a fresh one."""

    BINDINGS = [Binding("escape", "app.quit", "Quit")]

    def compose(self) -> ComposeResult:
        state = self.app.session.state
        widgets = [
            Static("ACCESS TOKEN", classes="title"),
            Static(state.refresh_reason or "", classes="hint"),
            Input(placeholder="access token", password=True, id="token"),
        ]
        if state.key is None:
            widgets.append(Input(placeholder="master password", password=True, id="password"))
        widgets.append(Horizontal(Button("Save", id="save", classes="-primary"), Button("Exit", id="exit")))
        yield Header()
        yield Container(*widgets, id="modal-card")
        yield Footer()

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "save":
            fields = self.query("#password")
            password = fields.first(Input).value if fields else None
            try:
                await self.app.session.refresh_token(self.query_one("#token", Input).value, password)
            except DiaryError as exc:
                self.app.notify(str(exc))
                return
            await self.app.route()
        elif event.button.id == "exit":
            self.app.exit()


# ---------------------------------------------------------------------------
# Diary
# ---------------------------------------------------------------------------

class DiaryScreen(Screen):
    """Editor for one entry plus sync controls."""

    BINDINGS = [
        Binding("ctrl+s", "sync_now", "Sync"),
        Binding("ctrl+l", "lock", "Lock"),
    ]

    def __init__(self) -> None:
        super().__init__()
        self.entry_id = today_entry_id()

    def compose(self) -> ComposeResult:
        yield Header()
        with Container(id="modal-card"):
            yield Horizontal(
                Input(value=self.entry_id.split(":", 1)[1], placeholder="YYYY-MM-DD or YYYY", id="which"),
                Button("Open", id="open"),
            )
            yield TextArea(id="editor")
            yield Horizontal(
                Button("Sync Now", id="sync", classes="-primary"),
                Button("Pull", id="pull"),
                Button("Push All", id="push_all"),
                Button("Pull All", id="pull_all"),
            )
            yield Horizontal(
                Button("Export", id="export"),
                Button("Import", id="import"),
                Button("Settings", id="settings"),
                Button("Change Password", id="change_password"),
                Button("Lock", id="lock"),
            )
            self.recent_list = ListView()
            yield self.recent_list
        yield Footer()

    async def on_mount(self) -> None:
        await self.load_entry(self.entry_id)

    async def load_entry(self, entry_id: str) -> None:
        self.entry_id = entry_id
        editor = self.query_one("#editor", TextArea)
        editor.text = await self.app.editor.get_content(entry_id)
        self.sub_title = entry_id
        await self.refresh_recent()

    async def refresh_recent(self) -> None:
        self.recent_list.clear()
        for record in await self.app.editor.recent():
            item = ListItem(Label(f"{record.id}  ({record.word_count} words)"))
            item.data = record.id
            self.recent_list.append(item)

    async def on_text_area_changed(self, event: TextArea.Changed) -> None:
        if event.text_area.id != "editor":
            return
        text = event.text_area.text
        if text == await self.app.editor.get_content(self.entry_id):
            return
        try:
            await self.app.editor.set_content(self.entry_id, text)
        except DiaryError as exc:
            self.app.notify(str(exc))

    async def on_list_view_selected(self, message: ListView.Selected) -> None:
        await self.load_entry(message.item.data)

    async def action_sync_now(self) -> None:
        result = await self.app.engine.sync_now(self.entry_id)
        if result.outcome is PushOutcome.CONFLICT and result.conflict is not None:
            self.app.push_screen(ConflictModal(result.conflict), self.app.after_conflict)
            return
        self.app.notify(result.message or result.outcome.value)

    async def after_modal(self, changed: Optional[bool]) -> None:
        if changed:
            await self.load_entry(self.entry_id)

    async def action_lock(self) -> None:
        await self.app.session.lock()
        await self.app.route()

    async def on_button_pressed(self, event: Button.Pressed) -> None:
        bid = event.button.id or ""
        engine = self.app.engine
        try:
            if bid == "open":
                await self.load_entry(entry_id_for(self.query_one("#which", Input).value))
            elif bid == "sync":
                await self.action_sync_now()
            elif bid == "pull":
                result = await engine.pull(self.entry_id)
                if result.outcome is PullOutcome.CONFLICT and result.conflict is not None:
                    self.app.push_screen(ConflictModal(result.conflict), self.app.after_conflict)
                    return
                if result.outcome is PullOutcome.UPDATED:
                    await self.load_entry(self.entry_id)
                self.app.notify(result.message or result.outcome.value)
            elif bid == "push_all":
                summary = await engine.bulk_push()
                self.app.notify(
                    f"{len(summary.succeeded)} pushed, {len(summary.failed)} failed, "
                    f"{len(summary.conflicted)} in conflict, {len(summary.skipped)} skipped"
                )
            elif bid == "pull_all":
                summary = await engine.bulk_pull()
                await self.load_entry(self.entry_id)
                self.app.notify(
                    f"{len(summary.succeeded)} updated, {len(summary.failed)} failed, "
                    f"{len(summary.conflicted)} in conflict, {len(summary.skipped)} skipped"
                )
            elif bid == "export":
                result = await export_archive()
                self.app.notify(f"Exported to {result.path}" if result.path else "Nothing to export")
            elif bid == "import":
                self.app.push_screen(ImportModal(), self.after_modal)
            elif bid == "settings":
                self.app.push_screen(SettingsModal(), self.after_modal)
            elif bid == "change_password":
                self.app.push_screen(ChangePasswordModal())
            elif bid == "lock":
                await self.action_lock()
        except DiaryError as exc:
            self.app.notify(str(exc))


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

class CipherDiaryApp(App):
    """Textual App wrapper. Owns the session, sync engine and editor."""

    TITLE = "CIPHER//DIARY"
    CSS = APP_CSS

    def __init__(self, cfg: Optional[dict] = None) -> None:
        super().__init__()
        self.cfg = cfg or load_config()
        self.session = build_session(self.cfg)
        self.engine = build_engine(self.session, self.cfg)
        self.editor = DiaryEditor(self.engine)
        self.engine.add_status_listener(self._on_sync_status)

    def _on_sync_status(self, status: SyncStatus, message: str) -> None:
        last = self.engine.last_synced_at
        suffix = f" | last sync {last:%Y-%m-%d %H:%M}" if last else ""
        self.sub_title = f"sync: {status.value}{suffix}"

    async def on_mount(self) -> None:
        await init_db()
        await self.engine.load()
        await self.session.check()
        self.set_interval(60, self.check_expiry)
        await self.route()

    async def on_unmount(self) -> None:
        await self.engine.close()

    async def route(self) -> None:
        """Show the screen for the current auth stage."""
        stage = self.session.stage
        if stage is Stage.NEEDS_SETUP:
            screen: Screen = SetupScreen()
        elif stage is Stage.NEEDS_TOKEN_REFRESH:
            screen = TokenRefreshScreen()
        elif stage is Stage.READY:
            screen = DiaryScreen()
        else:
            screen = UnlockScreen()
        await self.switch_screen(screen)

    async def check_expiry(self) -> None:
        before = self.session.stage
        await self.session.check_expiry()
        if self.session.stage is not before:
            self.notify("Session expired, unlock again")
            await self.route()

    async def after_conflict(self, entry_id: Optional[str]) -> None:
        screen = self.screen
        if entry_id and isinstance(screen, DiaryScreen) and screen.entry_id == entry_id:
            await screen.load_entry(entry_id)


def main() -> None:
    """Configure logging and run the Textual application."""
    cfg = load_config()
    path = log_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(path),
        level=str(cfg.get("log_level", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(CipherDiaryApp(cfg).run_async())


if __name__ == "__main__":
    main()
