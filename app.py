from __future__ import annotations
import hashlib
import logging
import time
from datetime import datetime
import pandas as pd
import streamlit as st
from roster.config import load_settings, save_settings, history_alias_table
from roster.errors import ConfigurationError, RosterError
from roster.export import export_lda_report_to_excel_bytes, issues_to_frame, roster_to_excel_bytes
from roster.ingest import HISTORY_SHEET, MASTER_SHEET, load_history_workbook, load_roster_workbook, load_source_tables, sheet_names
from roster.merge import MergeMode, MergeOptions, upsert_roster
from roster.report import build_lda_report, roster_to_frame, summary_counts
from roster.tags import FollowUpDebouncer, classify_dnc, detect_outreach_tags

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("roster.app")

st.set_page_config(page_title="Retention Roster", layout="wide")
st.title("Retention Roster: Master List refresh and LDA report")

settings = load_settings()
table = settings.columns

# =========================
# Состояние сессии: одна незакоммиченная операция на Master List
# =========================
for k in ("roster", "history", "pending", "roster_key"):
    st.session_state.setdefault(k, None)
st.session_state.setdefault("debouncer", FollowUpDebouncer())


def _file_key(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


# =========================
# Sidebar: настройки
# =========================
with st.sidebar:
    st.header("Settings")
    settings.days_out = int(st.number_input("Days Out threshold", min_value=0, value=int(settings.days_out)))
    settings.include_failing_list = st.checkbox("Include failing list", value=settings.include_failing_list)
    settings.include_dnc_tag = st.checkbox("Show DNC tags", value=settings.include_dnc_tag)
    settings.include_lda_tag = st.checkbox("Show LDA follow-ups", value=settings.include_lda_tag)
    settings.grades_exclude = st.text_input("Skip grade rows for courses containing", value=settings.grades_exclude)
    settings.treat_empty_grades_as_zero = st.checkbox("Treat empty grades as 0", value=settings.treat_empty_grades_as_zero)
    settings.gradebook_url_template = st.text_input("Gradebook URL template", value=settings.gradebook_url_template)
    if st.button("Save settings"):
        save_settings(settings)
        st.success("Saved.")

# =========================
# Master List
# =========================
master_file = st.file_uploader("Master workbook (.xlsx)", type=["xlsx"], accept_multiple_files=False)
if master_file is not None:
    data = master_file.getvalue()
    key = _file_key(data)
    if st.session_state["roster_key"] != key:
        try:
            st.session_state["roster"] = load_roster_workbook(data, MASTER_SHEET)
            st.session_state["history"] = (
                load_history_workbook(data, history_alias_table()) if HISTORY_SHEET in sheet_names(data) else None
            )
            st.session_state["roster_key"] = key
            st.session_state["pending"] = None
        except RosterError as e:
            st.error(str(e))

roster = st.session_state["roster"]
history = st.session_state["history"]

if roster is None:
    st.info("Upload the master workbook to start.")
    st.stop()

st.caption(f"Master List: {len(roster)} students, {roster.width} columns"
           + (f" | Student History: {len(history)} entries" if history is not None else ""))

tab_import, tab_report, tab_tags = st.tabs(["Import", "LDA report", "Outreach tags"])

# =========================
# Импорт
# =========================
with tab_import:
    mode_label = st.radio("Import mode", ["Refresh Master List (full replace)", "Update grades (partial)"], horizontal=True)
    mode = MergeMode.FULL_REPLACE if mode_label.startswith("Refresh") else MergeMode.PARTIAL_UPDATE
    uploads = st.file_uploader("Source files (.csv / .xlsx)", type=["csv", "xlsx"], accept_multiple_files=True)

    sources = []
    if uploads:
        try:
            sources = load_source_tables(uploads, table)
        except (RosterError, ValueError) as e:
            st.error(f"Could not read the upload: {e}")

    if sources:
        names = [t.name for t in sources]
        pick = st.selectbox("Table to import", names)
        src = sources[names.index(pick)]
        with st.expander(f"Preview: {src.name} ({len(src)} rows)", expanded=False):
            st.dataframe(pd.DataFrame(src.rows[:20], columns=src.headers), width="stretch")

        if st.button("Run import", type="primary"):
            try:
                result = upsert_roster(roster, src, table, mode, now=datetime.now(),
                                       options=MergeOptions.from_settings(settings))
            except ConfigurationError as e:
                st.error(str(e))
            else:
                st.session_state["pending"] = result

    pending = st.session_state["pending"]
    if pending is not None:
        s = pending.summary()
        c1, c2, c3 = st.columns(3)
        c1.metric("Rows after import", s["rows"])
        c2.metric("New students", s["new"])
        c3.metric("Existing students", s["existing"])
        if pending.issues:
            st.dataframe(issues_to_frame(pending.issues), width="stretch", hide_index=True)
        if pending.new_identities:
            with st.expander("New students", expanded=False):
                st.write(", ".join(pending.new_identities))

        a1, a2 = st.columns(2)
        with a1:
            if st.button("Commit to Master List"):
                roster.commit(pending.roster)
                st.session_state["pending"] = None
                logger.info("Master List committed: %d rows", len(roster))
                st.success("Master List updated.")
        with a2:
            if st.button("Discard"):
                st.session_state["pending"] = None
                st.rerun()

    st.download_button(
        "Download Master List (.xlsx)",
        data=roster_to_excel_bytes(roster, table, MASTER_SHEET),
        file_name="master_list.xlsx",
        mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )

# =========================
# LDA отчёт
# =========================
with tab_report:
    day = st.date_input("Report date", value=datetime.now().date())
    now = datetime(day.year, day.month, day.day)
    try:
        report = build_lda_report(roster, table, now, history=history, settings=settings)
    except ConfigurationError as e:
        report = None
        st.error(str(e))
    if report is not None:
        counts = summary_counts(report)
        st.subheader(f"{report.sheet_name}: {counts['lda']} students")
        st.dataframe(report.lda.drop(columns=["_row"], errors="ignore"), width="stretch", hide_index=True)
        if report.failing is not None:
            st.subheader(f"Failing: {counts['failing']} students")
            st.dataframe(report.failing.drop(columns=["_row"], errors="ignore"), width="stretch", hide_index=True)
        if report.issues:
            st.dataframe(issues_to_frame(report.issues), width="stretch", hide_index=True)
        st.download_button(
            "Download LDA report (.xlsx)",
            data=export_lda_report_to_excel_bytes(report, link_label=settings.gradebook_label),
            file_name=f"{report.sheet_name}.xlsx",
            mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )
    with st.expander("Full Master List", expanded=False):
        st.dataframe(roster_to_frame(roster, table).drop(columns=["_row"]), width="stretch")

# =========================
# Метки outreach из комментария
# =========================
with tab_tags:
    comment = st.text_area("Outreach comment", key="outreach_comment")
    tag_text = st.text_input("Existing tags (comma separated)", key="outreach_tags")
    deb: FollowUpDebouncer = st.session_state["debouncer"]
    dates = deb.feed(comment, datetime.now(), time.monotonic())
    tags = detect_outreach_tags(comment, datetime.now())
    st.write("Detected tags:", ", ".join(tags) if tags else "none")
    st.write("Follow-up dates:", ", ".join(sorted(dates)) if dates else "none")
    scope = classify_dnc(tag_text)
    if scope.label:
        st.warning(f"{scope.label}: email {'blocked' if scope.email_excluded else 'allowed'}, "
                   f"phone {'blocked' if scope.blocks('phone') else 'allowed'}")
