"""
Streamlit Frontend for Expense Tracker

The household ledger UI: record bills, browse, edit and remove them, see
statistics, and move data in and out as CSV or JSON backups.

DESIGN PRINCIPLES:
1. Simple, clear interface
2. Balances always visible next to the payment methods
3. Clear error messages in simple language
4. Destructive actions (remove, restore) need an explicit confirmation

All ledger calls run on one long-lived event loop owned by the cached
components, so the SQLite connection and the store lock stay on a
single loop across reruns.
"""

import asyncio
import threading
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation

import streamlit as st

from expense_tracker.config import get_settings, validate_all_settings
from expense_tracker.ledger.errors import LedgerError, StorageError
from expense_tracker.models.entities import (
    BillDraft,
    BillPatch,
    CreditMethod,
    TransactionType,
    balance_of,
)
from expense_tracker.models.reports import BillFilter, DateRangePreset
from expense_tracker.orchestrator import AppComponents, create_app_components


# Page configuration
st.set_page_config(
    page_title="Expense Tracker",
    page_icon="💰",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
    .stButton>button {
        width: 100%;
        margin-top: 10px;
    }
    .big-number {
        font-size: 2.0em;
        font-weight: bold;
        color: #2c3e50;
    }
</style>
""", unsafe_allow_html=True)


class LoopRunner:
    """Runs coroutines on one background event loop."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self._thread.start()

    def run(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()


@st.cache_resource
def get_runtime() -> tuple[LoopRunner, AppComponents]:
    """Get or create the event loop and application components (cached)."""
    runner = LoopRunner()

    async def build() -> AppComponents:
        return await create_app_components(start_scheduler=True)

    return runner, runner.run(build())


def run_async(coro):
    """Helper to run async functions in Streamlit."""
    runner, _ = get_runtime()
    return runner.run(coro)


def money(value: Decimal) -> str:
    return f"{value:,.2f}"


def main():
    """Main application entry point."""
    _, app = get_runtime()

    st.sidebar.title("💰 Expense Tracker")
    for warning in app.warnings:
        st.sidebar.warning(warning)
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigate to:",
        ["➕ Record", "📋 Bills", "📊 Statistics", "💳 Accounts", "📦 Import / Backup", "⚙️ Settings"],
        index=0,
    )

    if page == "➕ Record":
        render_record_page(app)
    elif page == "📋 Bills":
        render_bills_page(app)
    elif page == "📊 Statistics":
        render_statistics_page(app)
    elif page == "💳 Accounts":
        render_accounts_page(app)
    elif page == "📦 Import / Backup":
        render_data_page(app)
    elif page == "⚙️ Settings":
        render_settings_page(app)


def render_record_page(app: AppComponents):
    """Render the bill entry page."""
    st.title("➕ Record a Bill")

    owners = run_async(app.catalog.list_owners())
    if not owners:
        st.info("No data yet. Create the default owners, categories and accounts to get started.")
        if st.button("Initialize default data", type="primary"):
            try:
                counts = run_async(app.catalog.initialize_defaults())
                st.success(f"Created {counts}")
                st.rerun()
            except LedgerError as e:
                st.error(str(e))
        return

    st.markdown("### Quick expense")
    items = app.quick_expense.items()
    columns = st.columns(4)
    for i, item in enumerate(items):
        with columns[i % 4]:
            if st.button(f"{item.label} · {item.amount}", key=f"quick_{item.label}"):
                try:
                    receipt = run_async(app.quick_expense.record(item.label))
                    st.success(
                        f"Recorded {receipt.amount} {item.label} on {receipt.payment_method.name}"
                    )
                except (LedgerError, StorageError) as e:
                    st.error(str(e))

    st.markdown("---")
    st.markdown("### Bill details")

    transaction_type = st.radio(
        "Type",
        options=list(TransactionType),
        format_func=lambda t: t.value.title(),
        horizontal=True,
    )
    owner = st.selectbox("Owner", options=owners, format_func=lambda o: o.name)
    methods = run_async(app.catalog.list_payment_methods(owner.id))
    categories = run_async(app.catalog.list_categories(transaction_type))

    with st.form("record_bill"):
        amount_text = st.text_input("Amount", placeholder="e.g. 25.50")
        method = st.selectbox("Payment method", options=methods, format_func=lambda m: m.name)
        chosen = st.multiselect("Categories", options=categories, format_func=lambda c: c.name)
        col1, col2 = st.columns(2)
        with col1:
            bill_day = st.date_input("Date", value=date.today())
        with col2:
            bill_time = st.time_input("Time", value=datetime.now().time().replace(microsecond=0))
        note = st.text_input("Note (optional)")
        submitted = st.form_submit_button("💾 Save", type="primary")

    if submitted:
        try:
            amount = Decimal(amount_text.strip())
        except InvalidOperation:
            st.error("Please enter a valid amount.")
            return
        if method is None or not chosen:
            st.error("Choose a payment method and at least one category.")
            return
        try:
            run_async(app.engine.record_bill(BillDraft(
                amount=amount,
                transaction_type=transaction_type,
                payment_method_id=method.id,
                category_ids=[c.id for c in chosen],
                owner_id=owner.id,
                note=note or None,
                date=datetime.combine(bill_day, bill_time),
            )))
            st.success("✅ Bill saved")
        except (LedgerError, StorageError) as e:
            st.error(f"Could not save the bill: {e}")


def _filter_controls(key: str) -> BillFilter:
    col1, col2 = st.columns(2)
    with col1:
        preset = st.selectbox(
            "Date range",
            options=list(DateRangePreset),
            index=1,
            format_func=lambda p: p.value.replace("_", " ").title(),
            key=f"{key}_preset",
        )
    with col2:
        types = st.multiselect(
            "Types",
            options=list(TransactionType),
            format_func=lambda t: t.value.title(),
            key=f"{key}_types",
        )

    if preset == DateRangePreset.CUSTOM:
        start, end = st.date_input(
            "Custom range",
            value=(date.today().replace(day=1), date.today()),
            key=f"{key}_range",
        )
        return BillFilter(
            start_date=datetime.combine(start, time.min),
            end_date=datetime.combine(end, time(23, 59, 59)),
            transaction_types=types or None,
        )
    return BillFilter.for_preset(preset, transaction_types=types or None)


def render_bills_page(app: AppComponents):
    """Render the bills list page."""
    st.title("📋 Your Bills")

    bill_filter = _filter_controls("bills")
    result = run_async(app.queries.execute(bill_filter))
    st.caption(result.query_description)

    if not result.data_found:
        st.info("No bills match these filters.")
        return

    owners = {o.id: o.name for o in run_async(app.catalog.list_owners())}
    category_list = run_async(app.catalog.list_categories())
    method_list = run_async(app.catalog.list_payment_methods())
    categories = {c.id: c.name for c in category_list}
    methods = {m.id: m.name for m in method_list}

    for bill in result.bills:
        col1, col2, col3 = st.columns([3, 2, 1])
        with col1:
            names = ", ".join(categories.get(c, "?") for c in bill.category_ids)
            st.markdown(f"**{names}** · {bill.note or ''}")
            st.caption(f"{bill.date:%Y-%m-%d %H:%M} · {owners.get(bill.owner_id, '?')}")
        with col2:
            st.markdown(
                f"{bill.transaction_type.value} **{money(bill.amount)}** "
                f"via {methods.get(bill.payment_method_id, '?')}"
            )
        with col3:
            confirm = st.checkbox("confirm", key=f"confirm_{bill.id}")
            if st.button("🗑️ Remove", key=f"remove_{bill.id}", disabled=not confirm):
                try:
                    run_async(app.engine.remove_bill(bill.id))
                    st.rerun()
                except (LedgerError, StorageError) as e:
                    st.error(str(e))

        with st.expander("✏️ Edit"):
            _render_edit_form(app, bill, method_list, category_list)


def _render_edit_form(app: AppComponents, bill, method_list, category_list):
    """Edit form for one bill; the ledger moves the balances on save."""
    same_owner = [m for m in method_list if m.owner_id == bill.owner_id] or method_list
    method_ids = [m.id for m in same_owner]
    with st.form(f"edit_{bill.id}"):
        amount_text = st.text_input("Amount", value=str(bill.amount), key=f"edit_amount_{bill.id}")
        transaction_type = st.selectbox(
            "Type",
            options=list(TransactionType),
            index=list(TransactionType).index(bill.transaction_type),
            format_func=lambda t: t.value.title(),
            key=f"edit_type_{bill.id}",
        )
        method = st.selectbox(
            "Payment method",
            options=same_owner,
            index=method_ids.index(bill.payment_method_id) if bill.payment_method_id in method_ids else 0,
            format_func=lambda m: m.name,
            key=f"edit_method_{bill.id}",
        )
        chosen = st.multiselect(
            "Categories",
            options=category_list,
            default=[c for c in category_list if c.id in bill.category_ids],
            format_func=lambda c: c.name,
            key=f"edit_categories_{bill.id}",
        )
        col1, col2 = st.columns(2)
        with col1:
            bill_day = st.date_input("Date", value=bill.date.date(), key=f"edit_date_{bill.id}")
        with col2:
            bill_time = st.time_input("Time", value=bill.date.time(), key=f"edit_time_{bill.id}")
        note = st.text_input("Note", value=bill.note or "", key=f"edit_note_{bill.id}")
        submitted = st.form_submit_button("💾 Save changes")

    if not submitted:
        return
    try:
        amount = Decimal(amount_text.strip())
    except InvalidOperation:
        st.error("Please enter a valid amount.")
        return
    if method is None or not chosen:
        st.error("Choose a payment method and at least one category.")
        return
    try:
        run_async(app.engine.amend_bill(bill.id, BillPatch(
            amount=amount,
            transaction_type=transaction_type,
            payment_method_id=method.id,
            category_ids=[c.id for c in chosen],
            note=note or None,
            date=datetime.combine(bill_day, bill_time),
        )))
        st.rerun()
    except (LedgerError, StorageError) as e:
        st.error(f"Could not update the bill: {e}")


def render_statistics_page(app: AppComponents):
    """Render the statistics page."""
    st.title("📊 Statistics")

    result = run_async(app.queries.execute(_filter_controls("stats")))
    stats = result.statistics

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Income", money(stats.total_income))
    col2.metric("Expense", money(stats.total_expense))
    col3.metric("Net", money(stats.net_income))
    col4.metric("Bills", stats.bill_count)

    st.markdown("### By category")
    st.dataframe(
        [{"Category": s.category_name, "Amount": float(s.amount), "Bills": s.count}
         for s in stats.by_category],
        use_container_width=True,
    )
    st.markdown("### By owner")
    st.dataframe(
        [{"Owner": s.owner_name, "Income": float(s.income), "Expense": float(s.expense),
          "Bills": s.count} for s in stats.by_owner],
        use_container_width=True,
    )
    st.markdown("### By payment method")
    st.dataframe(
        [{"Payment method": s.payment_method_name, "Amount": float(s.amount), "Bills": s.count}
         for s in stats.by_payment_method],
        use_container_width=True,
    )


def render_accounts_page(app: AppComponents):
    """Render payment methods and their balances."""
    st.title("💳 Accounts")

    owners = run_async(app.catalog.list_owners())
    for owner in owners:
        st.markdown(f"### {owner.name}")
        for method in run_async(app.catalog.list_payment_methods(owner.id)):
            if isinstance(method, CreditMethod):
                st.markdown(
                    f"**{method.name}** (credit) · owed {money(method.outstanding_balance)} · "
                    f"available {money(method.available_credit)} of {money(method.credit_limit)}"
                )
            else:
                st.markdown(f"**{method.name}** (savings) · balance {money(balance_of(method))}")

    if not owners:
        return

    st.markdown("---")
    with st.form("new_method"):
        st.markdown("### Add a payment method")
        owner = st.selectbox("Owner", options=owners, format_func=lambda o: o.name)
        name = st.text_input("Name")
        kind = st.radio("Kind", ["savings", "credit"], horizontal=True)
        value = st.text_input("Opening balance / credit limit", value="0")
        submitted = st.form_submit_button("Add")

    if submitted and name:
        try:
            amount = Decimal(value.strip())
            if kind == "credit":
                run_async(app.catalog.create_credit_method(name, owner.id, credit_limit=amount))
            else:
                run_async(app.catalog.create_savings_method(name, owner.id, balance=amount))
            st.rerun()
        except InvalidOperation:
            st.error("Please enter a valid number.")
        except (LedgerError, StorageError, ValueError) as e:
            st.error(str(e))


def render_data_page(app: AppComponents):
    """Render CSV import/export and backup/restore."""
    st.title("📦 Import / Backup")

    st.markdown("### Import CSV")
    upload = st.file_uploader("CSV file", type=["csv"])
    if upload is not None and st.button("Import", type="primary"):
        with st.spinner("Importing..."):
            result = run_async(app.import_csv(upload.getvalue()))
        st.success(
            f"Imported {result.success}, skipped {result.skipped} duplicates, "
            f"{result.failed} failed"
        )
        for error in result.errors:
            st.warning(error)

    st.markdown("### Export CSV")
    if st.button("Prepare CSV export"):
        st.session_state.csv_export = run_async(app.backups.export_csv())
    if st.session_state.get("csv_export"):
        st.download_button(
            "⬇️ Download bills.csv",
            data=st.session_state.csv_export.encode("utf-8"),
            file_name=f"bills_{date.today():%Y%m%d}.csv",
            mime="text/csv",
        )

    st.markdown("---")
    st.markdown("### Backup")
    last = app.backups.last_backup_time()
    st.caption(f"Last backup: {last:%Y-%m-%d %H:%M}" if last else "No backup yet")
    if st.button("💾 Write backup now"):
        try:
            path = run_async(app.backups.write_backup())
            st.success(f"Backup written to {path}")
        except OSError as e:
            st.error(f"Backup failed: {e}")

    st.markdown("### Restore")
    st.warning("Restoring replaces ALL current data with the backup's contents.")
    backup_file = st.file_uploader("Backup file", type=["json"])
    confirm = st.checkbox("I understand that current data will be replaced")
    if backup_file is not None and st.button("Restore", disabled=not confirm):
        try:
            counts = run_async(app.backups.restore(backup_file.getvalue().decode("utf-8")))
            st.success(f"Restored {counts}")
        except (LedgerError, StorageError, UnicodeDecodeError) as e:
            st.error(f"Restore failed, nothing was changed: {e}")


def render_settings_page(app: AppComponents):
    """Render the settings page."""
    st.title("⚙️ Settings")

    st.markdown("### Configuration Status")
    status = validate_all_settings()
    for name in ("storage", "backup", "importing", "quick_expense", "app"):
        if status.get(name, False):
            st.success(f"✅ {name}")
        else:
            st.error(f"❌ {name} - {status.get(f'{name}_error', 'invalid')}")

    settings = get_settings()
    st.markdown("---")
    st.markdown(f"**Storage:** {app.handle.backend}")
    st.markdown(f"**Database:** `{settings.storage.database_path}`")
    st.markdown(f"**Auto-backup interval:** {settings.backup.interval_days} day(s)")
    st.markdown(
        "To configure the application, create a `.env` file. "
        "See `.env.example` for the available variables."
    )


if __name__ == "__main__":
    main()
