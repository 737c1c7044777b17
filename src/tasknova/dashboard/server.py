"""Status API and single-page view of the active TaskNova session."""

from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse

from ..logger import iter_jsonl
from ..store.records import RecordKind

_STATUS_HTML = """<!doctype html>
<html lang=\"en\">
<head>
  <meta charset=\"utf-8\" />
  <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
  <title>TaskNova Status</title>
  <style>
    :root { --ink: #1f2430; --soft: #6b7385; --line: #e4e7ee; --brand: #f97316; --bad: #d64545; }
    body { margin: 0; font: 14px/1.5 "Inter", "Segoe UI", sans-serif; color: var(--ink); background: #f6f7fa; }
    header { display: flex; align-items: baseline; gap: 18px; padding: 18px 28px; background: #fff; border-bottom: 1px solid var(--line); }
    header h1 { margin: 0; font-size: 20px; }
    header h1 span { color: var(--brand); }
    #who { color: var(--soft); }
    #balance { margin-left: auto; font-size: 26px; font-weight: 600; }
    main { display: grid; grid-template-columns: 260px 1fr; gap: 20px; padding: 20px 28px; }
    .card { background: #fff; border: 1px solid var(--line); border-radius: 10px; padding: 14px 16px; }
    .card h2 { margin: 0 0 10px; font-size: 12px; color: var(--soft); text-transform: uppercase; }
    table { width: 100%; border-collapse: collapse; }
    td, th { text-align: left; padding: 4px 6px; border-bottom: 1px solid var(--line); font-size: 13px; }
    ul { margin: 0; padding-left: 18px; }
    li.error { color: var(--bad); }
    #events { max-height: 360px; overflow: auto; font: 12px/1.4 "JetBrains Mono", monospace; }
    .stack { display: grid; gap: 20px; }
  </style>
</head>
<body>
  <header>
    <h1>Task<span>Nova</span></h1>
    <div id=\"who\">signed out</div>
    <div id=\"balance\"></div>
  </header>
  <main>
    <div class=\"stack\">
      <section class=\"card\"><h2>Records</h2><table id=\"counts\"></table></section>
      <section class=\"card\"><h2>Notices</h2><ul id=\"notices\"></ul></section>
    </div>
    <div class=\"stack\">
      <section class=\"card\"><h2>Ledger</h2><table id=\"ledger\"></table></section>
      <section class=\"card\"><h2>Events</h2><div id=\"events\"></div></section>
    </div>
  </main>
  <script>
    const get = (url) => fetch(url).then((res) => res.ok ? res.json() : null);
    const row = (cells) => `<tr>${cells.map((c) => `<td>${c ?? ''}</td>`).join('')}</tr>`;

    async function refresh() {
      const summary = await get('/account');
      const account = summary && summary.account;
      document.getElementById('who').textContent = account
        ? `${account.name} (${account.is_guest ? 'guest' : account.email}) on ${summary.store} store`
        : 'signed out';
      document.getElementById('balance').textContent = account ? `${summary.balance} tokens` : '';
      const counts = (summary && summary.record_counts) || {};
      document.getElementById('counts').innerHTML = Object.entries(counts).map(([k, v]) => row([k, v])).join('');

      const ledger = await get('/ledger?limit=25');
      document.getElementById('ledger').innerHTML = ledger
        ? ledger.transactions.slice().reverse().map((t) => row([t.created_at, t.feature, t.cost, t.request_id])).join('')
        : '';

      const notices = await get('/notices');
      document.getElementById('notices').innerHTML = (notices ? notices.notices : [])
        .map((n) => `<li class=\"${n.level}\">${n.message}</li>`).join('');

      const events = await get('/events?limit=80');
      document.getElementById('events').innerHTML = (events ? events.events : []).reverse()
        .map((e) => `<div>${e.sequence ?? ''} ${e.event_type}</div>`).join('');
    }

    refresh();
    setInterval(refresh, 2500);
  </script>
</body>
</html>
"""


def create_app(
    *,
    session_provider: Callable[[], Any | None] | None = None,
    jsonl_path: str | None = None,
    event_limit: int = 500,
) -> FastAPI:
    """Create the status app for a live session, or for log-only viewing."""

    session_provider = session_provider or (lambda: None)
    log_path = Path(jsonl_path) if jsonl_path else None

    app = FastAPI(title="TaskNova Status", version="0.1.0")

    def _signed_in():
        session = session_provider()
        if session is None or session.account is None:
            raise HTTPException(status_code=404, detail="no active account")
        return session

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return _STATUS_HTML

    @app.get("/health")
    async def health() -> dict[str, Any]:
        session = session_provider()
        return {
            "ok": True,
            "session": session is not None,
            "durable": bool(session is not None and session.database is not None),
        }

    @app.get("/account")
    async def account() -> dict[str, Any]:
        session = session_provider()
        if session is None:
            return {"account": None}
        return await session.summary()

    @app.get("/ledger")
    async def ledger(limit: int = Query(default=50, ge=1, le=1000)) -> dict[str, Any]:
        session = _signed_in()
        items = await session.ledger.transactions(session.account.id)
        return {
            "success": True,
            "balance": str(await session.ledger.balance(session.account.id)),
            "transactions": [item.to_dict() for item in items[-limit:]],
            "count": len(items),
        }

    @app.get("/records/{kind}")
    async def records(kind: str) -> dict[str, Any]:
        session = _signed_in()
        try:
            record_kind = RecordKind(kind)
        except ValueError:
            raise HTTPException(status_code=404, detail=f"unknown record kind '{kind}'") from None
        items = [record.to_document() for record in session.coordinator.records_of(record_kind)]
        return {"success": True, "kind": record_kind.value, "records": items, "count": len(items)}

    @app.get("/notices")
    async def notices(drain: bool = False) -> dict[str, Any]:
        session = session_provider()
        if session is None:
            return {"success": True, "notices": [], "count": 0}
        items = session.notices.drain() if drain else session.notices.items()
        return {"success": True, "notices": [asdict(item) for item in items], "count": len(items)}

    @app.get("/events")
    async def events(limit: int | None = Query(default=None, ge=1, le=2000)) -> dict[str, Any]:
        limit = limit or event_limit
        session = session_provider()
        if session is not None:
            items = session.logger.read_recent(limit)
        elif log_path is not None:
            items = list(iter_jsonl(log_path, limit))
        else:
            items = []
        return {"success": True, "events": items, "count": len(items)}

    return app
