import streamlit as st
import asyncio
import uuid
import logging

from src.mamasaheli.config import get_settings, setup_logging
from src.mamasaheli.errors import OperationFailed, StoreError
from src.mamasaheli.db import init_db, get_encryption_key
from src.mamasaheli.accounts import create_account, login, logout, get_current_user, is_doctor
from src.mamasaheli.chat_history import (
    save_chat_message,
    get_chat_history_for_session,
    get_chat_sessions_list,
    delete_chat_session_history,
    add_bookmark,
    get_bookmarks,
    delete_bookmark,
    upload_chat_image,
    load_chat_context,
)
from src.mamasaheli.gemini_api import (
    ChatTurn,
    GeminiServiceError,
    UserPreferences,
    create_system_prompt,
    file_to_image_part,
    send_message_stream,
    start_chat,
)
from src.mamasaheli.health import (
    BLOOD_PRESSURE,
    BLOOD_SUGAR,
    WEIGHT,
    create_health_reading,
    get_health_readings,
    delete_health_reading,
    create_appointment,
    get_user_appointments,
    update_appointment,
    delete_appointment,
    create_medication_reminder,
    get_medication_reminders,
    delete_medication_reminder,
)
from src.mamasaheli.profiles import get_user_profile, create_user_profile, upload_profile_photo
from src.mamasaheli.bloodwork import process_bloodwork_report, get_bloodwork_entries, delete_bloodwork_entry
from src.mamasaheli.medical_documents import (
    upload_medical_document,
    get_user_medical_documents,
    delete_medical_document,
    get_medical_document_content,
)
from src.mamasaheli.forum import (
    create_forum_topic,
    get_forum_topics,
    get_forum_topic,
    create_forum_post,
    get_forum_posts,
    delete_forum_post,
    delete_forum_topic_and_posts,
    cast_forum_vote,
    get_user_vote_status,
)
from src.mamasaheli.doctor import get_doctor_dashboard, get_patient_overview
from src.mamasaheli.profiles import search_user_profiles
from src.mamasaheli.utils import calculate_weeks_pregnant, trimester_for_week

logger = logging.getLogger(__name__)


def setup_environment():
    """Validate configuration before anything touches the database"""
    try:
        get_settings()
        get_encryption_key()
    except ValueError as e:  # includes ConfigError
        st.error(f"❌ {e}")
        st.stop()


setup_logging()
setup_environment()


# --- Asyncio Event Loop Management ---
def get_or_create_eventloop():
    """Gets or creates the event loop for the current thread."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:  # 'get_running_loop' doesn't work in every context
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        return loop


def run_async(coro):
    """Runs an async coroutine in the thread's event loop."""
    return get_or_create_eventloop().run_until_complete(coro)


# Initialize session state
def init_session_state():
    """Initialize session state variables"""
    defaults = {
        "auth_token": None,
        "current_session_id": None,
        "chat_turns": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def show_error(e: Exception, action: str):
    if isinstance(e, (ValueError, StoreError, GeminiServiceError, OperationFailed)):
        st.error(f"❌ {e}")
    else:
        st.error(f"❌ Failed to {action}")
    logger.error(f"Failed to {action}: {e}")


# ------------------------------------------------------------------------------
# Auth
# ------------------------------------------------------------------------------
def render_auth():
    st.title("🤰 MamaSaheli")
    st.markdown("*Your companion through pregnancy*")
    login_tab, register_tab = st.tabs(["Log in", "Create account"])

    with login_tab:
        with st.form("login"):
            email = st.text_input("Email")
            password = st.text_input("Password", type="password")
            if st.form_submit_button("Log in"):
                try:
                    token = run_async(login(email, password))
                    st.session_state.auth_token = token
                    st.rerun()
                except Exception as e:
                    show_error(e, "log in")

    with register_tab:
        with st.form("register"):
            name = st.text_input("Name")
            email = st.text_input("Email", key="register_email")
            password = st.text_input("Password", type="password", key="register_password")
            if st.form_submit_button("Create account"):
                try:
                    user = run_async(create_account(email, password, name))
                    run_async(create_user_profile(user.id, {"name": user.name, "email": user.email}))
                    st.success("✅ Account created. You can log in now.")
                except Exception as e:
                    show_error(e, "create account")


# ------------------------------------------------------------------------------
# Chat
# ------------------------------------------------------------------------------
def render_chat_sidebar(user):
    st.header("💬 Chat Sessions")
    if st.button("➕ New Chat", use_container_width=True):
        st.session_state.current_session_id = None
        st.session_state.chat_turns = []
        st.rerun()

    sessions = run_async(get_chat_sessions_list(user.id))
    if not sessions:
        st.info("No chat sessions yet. Start a new chat!")
    for session in sessions:
        col1, col2 = st.columns([0.85, 0.15])
        with col1:
            is_current = session.session_id == st.session_state.current_session_id
            if st.button(
                f"{'🟢' if is_current else '⚪'} {session.preview}",
                key=f"session_{session.session_id}",
                help=f"{session.message_count} messages, {session.relative_date}",
                use_container_width=True,
            ):
                st.session_state.current_session_id = session.session_id
                st.session_state.chat_turns = []
                st.rerun()
        with col2:
            if st.button("🗑️", key=f"delete_{session.session_id}", help="Delete this session"):
                report = run_async(delete_chat_session_history(user.id, session.session_id))
                if report.success:
                    st.toast(f"Deleted {report.deleted_count} messages")
                else:
                    st.warning(f"⚠️ Deleted {report.deleted_count}, failed {report.failed_count}")
                if st.session_state.current_session_id == session.session_id:
                    st.session_state.current_session_id = None
                    st.session_state.chat_turns = []
                st.rerun()


async def stream_reply(user, turns, placeholder):
    full_response = ""
    async for chunk in send_message_stream(turns):
        full_response += chunk
        placeholder.markdown(full_response + "▌")
    placeholder.markdown(full_response)
    if full_response.strip():
        await save_chat_message(user.id, "assistant", full_response, st.session_state.current_session_id)
    return full_response


def render_pre_chat_form(user, profile):
    st.subheader("💬 New Chat")
    with st.form("pre_chat"):
        feeling = st.text_input("How are you feeling today?")
        weeks = st.number_input(
            "Weeks pregnant", min_value=0, max_value=45,
            value=int((profile.get("weeksPregnant") if profile else 0) or 0),
        )
        concerns = st.text_area("Any specific concerns?")
        if st.form_submit_button("Start chat"):
            prefs = UserPreferences(feeling=feeling or None, weeks_pregnant=int(weeks), specific_concerns=concerns or None)
            context = run_async(load_chat_context(user.id))
            turns = start_chat(prefs, profile, context)
            session_id = uuid.uuid4().hex
            st.session_state.current_session_id = session_id
            st.session_state.chat_turns = turns
            for turn in turns[1:]:
                run_async(save_chat_message(user.id, turn.role, turn.text, session_id))
            st.rerun()


def render_chat(user, profile):
    with st.sidebar:
        render_chat_sidebar(user)

    if not st.session_state.current_session_id:
        render_pre_chat_form(user, profile)
        return

    if not st.session_state.chat_turns:
        # reopened session: rebuild the system prompt around stored history
        history = run_async(get_chat_history_for_session(user.id, st.session_state.current_session_id))
        context = run_async(load_chat_context(user.id))
        system = ChatTurn("system", create_system_prompt(UserPreferences(), profile, context))
        st.session_state.chat_turns = [system] + [ChatTurn(m.role, m.content) for m in history]

    for index, turn in enumerate(st.session_state.chat_turns):
        if turn.role == "system":
            continue
        with st.chat_message(turn.role):
            st.markdown(turn.text)
            if turn.role == "assistant" and st.button("🔖", key=f"bookmark_{index}", help="Bookmark"):
                run_async(add_bookmark(user.id, turn.text))
                st.toast("Bookmarked")

    image = st.file_uploader("Attach an image", type=["jpg", "jpeg", "png", "webp", "gif", "heic", "heif"])
    if prompt := st.chat_input("Ask MamaSaheli anything..."):
        with st.chat_message("user"):
            st.markdown(prompt)
        try:
            images = []
            if image is not None:
                data = image.getvalue()
                images.append(file_to_image_part(data, image.type))
                run_async(upload_chat_image(user.id, image.name, data, image.type))
            run_async(save_chat_message(user.id, "user", prompt, st.session_state.current_session_id))
            st.session_state.chat_turns.append(ChatTurn("user", prompt, images))
            with st.chat_message("assistant"):
                reply = run_async(stream_reply(user, st.session_state.chat_turns, st.empty()))
            st.session_state.chat_turns.append(ChatTurn("assistant", reply))
        except Exception as e:
            show_error(e, "process message")


def render_bookmarks(user):
    st.subheader("🔖 Bookmarks")
    bookmarks = run_async(get_bookmarks(user.id))
    if not bookmarks:
        st.info("No bookmarks yet.")
    for bookmark in bookmarks:
        with st.container(border=True):
            st.markdown(bookmark.get("messageContent"))
            if st.button("Remove", key=f"rm_bookmark_{bookmark.id}"):
                run_async(delete_bookmark(bookmark.id))
                st.rerun()


# ------------------------------------------------------------------------------
# Health
# ------------------------------------------------------------------------------
def render_health(user, profile):
    st.subheader("📊 Health Log")
    if profile and profile.get("lmpDate"):
        try:
            week = calculate_weeks_pregnant(profile.get("lmpDate"))
            st.metric("Week", week, help=f"Trimester {trimester_for_week(week)}")
        except ValueError:
            pass

    bp_tab, sugar_tab, weight_tab, meds_tab = st.tabs(["Blood pressure", "Blood sugar", "Weight", "Medications"])
    with bp_tab:
        with st.form("bp"):
            systolic = st.number_input("Systolic", min_value=0, value=120)
            diastolic = st.number_input("Diastolic", min_value=0, value=80)
            if st.form_submit_button("Log"):
                save_reading(BLOOD_PRESSURE, user, {"systolic": systolic, "diastolic": diastolic})
        show_readings(BLOOD_PRESSURE, user, lambda r: f"{r.get('systolic')}/{r.get('diastolic')} mmHg")
    with sugar_tab:
        with st.form("sugar"):
            level = st.number_input("Level (mg/dL)", min_value=0.0, value=90.0)
            kind = st.selectbox("Measurement", ["fasting", "post_meal", "random"])
            if st.form_submit_button("Log"):
                save_reading(BLOOD_SUGAR, user, {"level": level, "measurementType": kind})
        show_readings(BLOOD_SUGAR, user, lambda r: f"{r.get('level')} mg/dL ({r.get('measurementType')})")
    with weight_tab:
        with st.form("weight"):
            weight = st.number_input("Weight", min_value=0.0, value=60.0)
            unit = st.selectbox("Unit", ["kg", "lbs"])
            if st.form_submit_button("Log"):
                save_reading(WEIGHT, user, {"weight": weight, "unit": unit})
        show_readings(WEIGHT, user, lambda r: f"{r.get('weight')} {r.get('unit')}")
    with meds_tab:
        render_medications(user)


def save_reading(kind, user, data):
    try:
        run_async(create_health_reading(kind, user.id, data))
        st.success(f"✅ {kind.label} logged")
    except Exception as e:
        show_error(e, f"log {kind.label}")


def show_readings(kind, user, describe):
    for reading in run_async(get_health_readings(kind, user.id)):
        col1, col2 = st.columns([0.85, 0.15])
        col1.write(f"{describe(reading)} · {reading.get('recordedAt', '')[:16]}")
        if col2.button("🗑️", key=f"del_{reading.id}"):
            run_async(delete_health_reading(kind, reading.id))
            st.rerun()


def render_medications(user):
    with st.form("meds"):
        name = st.text_input("Medication")
        dosage = st.text_input("Dosage")
        frequency = st.text_input("Frequency")
        times = st.text_input("Times (comma separated)")
        if st.form_submit_button("Add reminder"):
            try:
                run_async(create_medication_reminder(user.id, {
                    "medicationName": name, "dosage": dosage, "frequency": frequency,
                    "times": times.split(","),
                }))
                st.success("✅ Reminder added")
            except Exception as e:
                show_error(e, "add reminder")
    for reminder in run_async(get_medication_reminders(user.id)):
        col1, col2 = st.columns([0.85, 0.15])
        col1.write(f"💊 {reminder.get('medicationName')} {reminder.get('dosage')} · {reminder.get('frequency')}")
        if col2.button("🗑️", key=f"del_med_{reminder.id}"):
            run_async(delete_medication_reminder(reminder.id))
            st.rerun()


def render_appointments(user):
    st.subheader("📅 Appointments")
    with st.form("appointment"):
        date = st.date_input("Date")
        time = st.time_input("Time")
        kind = st.text_input("Type", placeholder="General")
        notes = st.text_area("Notes")
        if st.form_submit_button("Schedule"):
            try:
                run_async(create_appointment(user.id, {
                    "date": f"{date.isoformat()}T{time.strftime('%H:%M')}:00.000Z",
                    "time": time.strftime("%H:%M"),
                    "appointmentType": kind,
                    "notes": notes,
                }))
                st.success("✅ Appointment scheduled")
            except Exception as e:
                show_error(e, "schedule appointment")

    for appointment in run_async(get_user_appointments(user.id)):
        col1, col2, col3 = st.columns([0.7, 0.15, 0.15])
        done = "✅" if appointment.get("isCompleted") else "🕒"
        col1.write(f"{done} {appointment.get('appointmentType')} · {appointment.get('date', '')[:10]} {appointment.get('time')}")
        if not appointment.get("isCompleted") and col2.button("Done", key=f"done_{appointment.id}"):
            run_async(update_appointment(appointment.id, {"isCompleted": True}))
            st.rerun()
        if col3.button("🗑️", key=f"del_appt_{appointment.id}"):
            run_async(delete_appointment(appointment.id))
            st.rerun()


# ------------------------------------------------------------------------------
# Records
# ------------------------------------------------------------------------------
def render_records(user):
    st.subheader("🧾 Medical Records")
    docs_tab, blood_tab, photo_tab = st.tabs(["Documents", "Bloodwork", "Profile photo"])

    with docs_tab:
        uploaded = st.file_uploader("Upload a document", type=["pdf", "jpg", "jpeg", "png", "doc", "docx", "txt"])
        description = st.text_input("Description")
        if uploaded and st.button("Upload"):
            try:
                run_async(upload_medical_document(user.id, uploaded.name, uploaded.getvalue(), uploaded.type, description))
                st.success("✅ Uploaded")
            except Exception as e:
                show_error(e, "upload document")
        for document in run_async(get_user_medical_documents(user.id)):
            col1, col2, col3 = st.columns([0.7, 0.15, 0.15])
            col1.markdown(f"📄 **{document.get('fileName')}** {document.get('description') or ''}")
            try:
                stored, content = run_async(get_medical_document_content(document, user.id, user.labels))
                col2.download_button(
                    "⬇️", content, file_name=stored.name, mime=stored.mime_type, key=f"dl_doc_{document.id}"
                )
            except Exception as e:
                col2.caption("unavailable")
                logger.warning(f"Could not load medical document {document.id}: {e}")
            if col3.button("🗑️", key=f"del_doc_{document.id}"):
                run_async(delete_medical_document(document))
                st.rerun()

    with blood_tab:
        report = st.file_uploader("Upload a lab report", type=["pdf", "jpg", "jpeg", "png", "webp"])
        if report and st.button("Analyze report"):
            with st.spinner("Reading your report..."):
                try:
                    run_async(process_bloodwork_report(user.id, report.getvalue(), report.type))
                    st.success("✅ Report saved")
                except Exception as e:
                    show_error(e, "analyze report")
        for entry in run_async(get_bloodwork_entries(user.id)):
            with st.expander(f"{entry.get('recordedAt', '')[:10]} · {entry.get('summary')}"):
                st.dataframe(entry.get("results") or [], use_container_width=True)
                if st.button("Delete entry", key=f"del_blood_{entry.id}"):
                    run_async(delete_bloodwork_entry(entry.id))
                    st.rerun()

    with photo_tab:
        photo = st.file_uploader("Profile photo", type=["jpg", "jpeg", "png", "gif", "webp"])
        if photo and st.button("Save photo"):
            try:
                run_async(upload_profile_photo(user.id, photo.name, photo.getvalue(), photo.type))
                st.success("✅ Photo updated")
            except Exception as e:
                show_error(e, "upload photo")


# ------------------------------------------------------------------------------
# Forum
# ------------------------------------------------------------------------------
def vote_buttons(user, target_id, target_type, score):
    status = run_async(get_user_vote_status(user.id, target_id))
    col1, col2, col3 = st.columns([0.1, 0.1, 0.8])
    if col1.button("⬆️" if status != "up" else "🔼", key=f"up_{target_id}"):
        run_async(cast_forum_vote(user.id, target_id, target_type, "up"))
        st.rerun()
    if col2.button("⬇️" if status != "down" else "🔽", key=f"down_{target_id}"):
        run_async(cast_forum_vote(user.id, target_id, target_type, "down"))
        st.rerun()
    col3.write(f"Score: {score}")


def render_forum(user):
    st.subheader("👩‍👩‍👧 Community Forum")
    topic_id = st.session_state.get("forum_topic_id")
    if topic_id:
        render_topic(user, topic_id)
        return

    with st.expander("Start a new topic"):
        with st.form("topic"):
            title = st.text_input("Title")
            content = st.text_area("Content")
            category = st.text_input("Category")
            if st.form_submit_button("Post"):
                try:
                    run_async(create_forum_topic(user.id, user.name, title, content, category))
                    st.success("✅ Topic created")
                except Exception as e:
                    show_error(e, "create topic")

    col1, col2 = st.columns(2)
    search = col1.text_input("Search titles")
    sort_by = col2.selectbox("Sort by", ["lastReplyAt", "createdAt", "voteScore"])
    topics = run_async(get_forum_topics(sort_by=sort_by, search=search))
    for topic in topics.documents:
        with st.container(border=True):
            pin = "📌 " if topic.get("isPinned") else ""
            if st.button(f"{pin}{topic.get('title')}", key=f"topic_{topic.id}"):
                st.session_state.forum_topic_id = topic.id
                st.rerun()
            st.caption(f"by {topic.get('userName')} · {topic.get('replyCount', 0)} replies · score {topic.get('voteScore', 0)}")


def render_topic(user, topic_id):
    if st.button("← Back to topics"):
        st.session_state.forum_topic_id = None
        st.rerun()
    topic = run_async(get_forum_topic(topic_id))
    if topic is None:
        st.error("❌ Topic not found")
        return
    st.markdown(f"### {topic.get('title')}")
    st.markdown(topic.get("content"))
    vote_buttons(user, topic.id, "topic", topic.get("voteScore", 0))
    if topic.get("userId") == user.id and st.button("Delete topic"):
        report = run_async(delete_forum_topic_and_posts(topic.id))
        if report.topic_deleted:
            st.session_state.forum_topic_id = None
            st.rerun()
        st.warning(f"⚠️ {report.posts_failed} replies could not be deleted")

    for post in run_async(get_forum_posts(topic.id)).documents:
        with st.container(border=True):
            st.caption(post.get("userName"))
            st.markdown(post.get("content"))
            vote_buttons(user, post.id, "post", post.get("voteScore", 0))
            if post.get("userId") == user.id and st.button("Delete", key=f"del_post_{post.id}"):
                run_async(delete_forum_post(post.id, topic.id))
                st.rerun()

    if not topic.get("isLocked"):
        with st.form("reply"):
            content = st.text_area("Reply")
            if st.form_submit_button("Reply"):
                try:
                    run_async(create_forum_post(user.id, user.name, topic.id, content))
                    st.rerun()
                except Exception as e:
                    show_error(e, "post reply")


# ------------------------------------------------------------------------------
# Doctor
# ------------------------------------------------------------------------------
def render_doctor():
    st.subheader("🩺 Doctor Dashboard")
    dashboard = run_async(get_doctor_dashboard())
    col1, col2 = st.columns(2)
    with col1:
        st.markdown("#### Upcoming appointments")
        for appointment in dashboard.upcoming_appointments:
            patient = dashboard.patients.get(appointment.get("userId"))
            name = patient.get("name") if patient else "Unknown patient"
            st.write(f"{appointment.get('date', '')[:10]} {appointment.get('time')} · {name}")
    with col2:
        st.markdown("#### Recent documents")
        for document in dashboard.recent_documents:
            patient = dashboard.patients.get(document.get("userId"))
            st.write(f"📄 {document.get('fileName')} · {patient.get('name') if patient else 'Unknown'}")

    query = st.text_input("Search patients by name or email")
    for profile in run_async(search_user_profiles(query)):
        with st.expander(f"{profile.get('name')} · {profile.get('email')}"):
            overview = run_async(get_patient_overview(profile.get("userId")))
            st.write(f"Weeks pregnant: {profile.get('weeksPregnant', 'N/A')}")
            for reading in overview.blood_pressure[:3]:
                st.write(f"BP {reading.get('systolic')}/{reading.get('diastolic')} · {reading.get('recordedAt', '')[:10]}")
            for entry in overview.bloodwork[:3]:
                st.write(f"🧪 {entry.get('summary')}")
            st.write(f"{len(overview.medical_documents)} documents, {len(overview.appointments)} appointments")


# ------------------------------------------------------------------------------
# Streamlit UI
# ------------------------------------------------------------------------------
st.set_page_config(page_title="MamaSaheli", layout="wide", initial_sidebar_state="expanded")

init_session_state()
if "app_initialized" not in st.session_state:
    with st.spinner("Connecting to services..."):
        try:
            run_async(init_db())
            st.session_state.app_initialized = True
        except Exception as e:
            st.error("❌ Application initialization failed.")
            logger.error(f"Fatal initialization error: {e}")
            st.stop()

user = run_async(get_current_user(st.session_state.auth_token))
if user is None:
    render_auth()
    st.stop()

profile = run_async(get_user_profile(user.id))
pages = ["Chat", "Bookmarks", "Health Log", "Appointments", "Records", "Forum"]
if is_doctor(user):
    pages.append("Doctor Dashboard")

with st.sidebar:
    st.title("🤰 MamaSaheli")
    st.caption(f"Signed in as {user.name}")
    page = st.radio("Go to", pages)
    if st.button("Log out"):
        run_async(logout(st.session_state.auth_token))
        st.session_state.auth_token = None
        st.rerun()
    st.divider()

if page == "Chat":
    render_chat(user, profile)
elif page == "Bookmarks":
    render_bookmarks(user)
elif page == "Health Log":
    render_health(user, profile)
elif page == "Appointments":
    render_appointments(user)
elif page == "Records":
    render_records(user)
elif page == "Forum":
    render_forum(user)
elif page == "Doctor Dashboard":
    render_doctor()

# Footer
st.divider()
st.markdown(
    "*🤖 Powered by Gemini AI | General information only, always consult your doctor*",
    help="MamaSaheli does not give medical advice.",
)
