import base64
import os
import time
from io import BytesIO
from urllib.parse import quote

import pandas as pd
import requests
import streamlit as st
from st_aggrid import AgGrid, GridOptionsBuilder, GridUpdateMode
from streamlit_paste_button import paste_image_button as pbutton

from live_feed import RECONNECT_DELAY_SECONDS, LiveFeedClient, LiveFeedState, ws_url

API_URL = os.getenv("TASK_INBOX_API_URL", "http://localhost:3000")
REQUEST_TIMEOUT = 30
LIVE_REFRESH_SECONDS = 2
PRIORITY_LABELS = {"high": "高", "medium": "中", "low": "低"}

st.set_page_config(page_title="智能体任务收件箱", layout="wide")

# 初始化session state
if "pasted_images" not in st.session_state:
    st.session_state["pasted_images"] = []
if "submitted_tasks" not in st.session_state:
    st.session_state["submitted_tasks"] = []


def handle_paste_image():
    try:
        paste_result = pbutton("📋 粘贴图片", key="paste_button")
        if paste_result and paste_result.image_data is not None:
            buffered = BytesIO()
            paste_result.image_data.save(buffered, format="PNG")
            img_str = base64.b64encode(buffered.getvalue()).decode()
            # 去重：只有新图片才加入
            existed_base64 = [img["base64"] for img in st.session_state["pasted_images"]]
            if img_str not in existed_base64:
                st.session_state["pasted_images"].append({
                    "image": paste_result.image_data,
                    "base64": img_str
                })
                st.success("图片已成功粘贴！")
            else:
                st.info("该图片已粘贴，无需重复添加。")
    except Exception as e:
        st.error(f"粘贴图片时出错: {str(e)}")


def display_pasted_images():
    if st.session_state["pasted_images"]:
        st.write("已粘贴图片：")
        cols = st.columns(3)
        for idx, img_data in enumerate(st.session_state["pasted_images"]):
            with cols[idx % 3]:
                st.image(img_data["image"], caption=f"第{idx+1}张", use_container_width=True)


def api_get(path):
    try:
        r = requests.get(f"{API_URL}{path}", timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        st.error(f"无法连接服务: {e}")
        return None
    if r.status_code != 200:
        st.error(r.json().get("message", "请求失败") if r.headers.get("content-type", "").startswith("application/json") else "请求失败")
        return None
    return r.json().get("data")


@st.cache_resource
def get_live_feed():
    # 整个Streamlit进程共用一条到 /ws 的连接
    state = LiveFeedState()
    LiveFeedClient(ws_url(API_URL), state).start()
    return state


def build_files_payload(uploaded_files):
    files = []
    for uploaded_file in uploaded_files or []:
        files.append(("attachments", (uploaded_file.name, uploaded_file.getvalue(), uploaded_file.type)))
    for idx, img_data in enumerate(st.session_state.get("pasted_images", [])):
        buf = BytesIO()
        img_data["image"].save(buf, format="PNG")
        files.append(("attachments", (f"pasted_{idx+1}.png", buf.getvalue(), "image/png")))
    return files


page = st.sidebar.radio("选择页面", ["添加任务", "智能体状态", "任务队列", "文件管理"], key="page")

# ========== 添加任务页面 ==========
if page == "添加任务":
    st.title("添加任务")
    with st.form("add_task_form", clear_on_submit=True):
        title = st.text_input("任务标题", max_chars=200)
        description = st.text_area("任务描述", max_chars=2000)
        priority = st.selectbox("优先级", ["high", "medium", "low"], index=1, format_func=lambda p: PRIORITY_LABELS[p])
        deadline = st.date_input("截止时间（可选）", value=None)
        expected = st.text_area("预期结果（可选）")
        notes = st.text_input("备注（可选）")
        st.markdown("""
        **提示：**
        - 最多5个附件，每个不超过10MB
        - 支持常见图片、文档、表格和压缩包
        """)
        uploaded_files = st.file_uploader("上传附件", accept_multiple_files=True)
        submitted = st.form_submit_button("提交任务")

    st.markdown("---")
    st.subheader("粘贴图片")
    if st.button("清空所有粘贴图片"):
        st.session_state["pasted_images"] = []
        st.rerun()
    handle_paste_image()
    display_pasted_images()

    if submitted:
        if not title.strip() or not description.strip():
            st.error("请填写任务标题和描述")
        else:
            data = {
                "title": title,
                "description": description,
                "priority": priority,
                "deadline": str(deadline) if deadline else "",
                "expected": expected,
                "notes": notes,
            }
            try:
                r_add = requests.post(f"{API_URL}/api/tasks", data=data,
                                      files=build_files_payload(uploaded_files) or None,
                                      timeout=REQUEST_TIMEOUT)
            except requests.RequestException as e:
                st.error(f"提交任务失败: {e}")
            else:
                result = r_add.json()
                if r_add.status_code == 200 and result.get("success"):
                    for att in result.get("attachments", []):
                        st.toast(f"附件 {att['displayName']} 上传成功！", icon="✅")
                    st.session_state["submitted_tasks"].insert(0, result["task"])
                    st.session_state["pasted_images"] = []
                    st.success("任务提交成功！")
                else:
                    st.toast(result.get("message", "添加失败"), icon="❌")

    if st.session_state["submitted_tasks"]:
        st.subheader("本次提交的任务")
        for task in st.session_state["submitted_tasks"][:10]:
            st.markdown(f"- **{task['title']}** ({PRIORITY_LABELS.get(task['priority'], task['priority'])}) {task['description']}")

# ========== 智能体状态页面 ==========
elif page == "智能体状态":
    st.title("智能体状态")
    feed = get_live_feed()

    @st.fragment(run_every=LIVE_REFRESH_SECONDS)
    def live_status():
        snap = feed.snapshot()
        if snap["connected"]:
            st.success("🟢 已连接到智能体")
        else:
            st.warning(f"🔴 连接断开，{RECONNECT_DELAY_SECONDS}秒后重连")

        # 新增任务提示
        seen = st.session_state.setdefault("seen_task_ids", {t.get("id") for t in snap["recent_tasks"]})
        for task in reversed(snap["recent_tasks"]):
            if task.get("id") not in seen:
                seen.add(task.get("id"))
                st.toast(f"任务已添加到智能体队列: {task.get('title', '')}", icon="📥")

        content = snap["status"]
        if content is None:
            content = api_get("/api/status")
        if content is not None:
            if content.strip():
                st.markdown(content)
            else:
                st.info("智能体暂无状态输出。")
        if snap["updated_at"]:
            st.caption(f"最后更新: {time.strftime('%H:%M:%S', time.localtime(snap['updated_at']))}")

        if snap["recent_tasks"]:
            st.subheader("最近添加的任务")
            for task in snap["recent_tasks"]:
                st.markdown(f"- **{task.get('title', '')}** ({PRIORITY_LABELS.get(task.get('priority'), task.get('priority'))})")

    live_status()

# ========== 任务队列页面 ==========
elif page == "任务队列":
    st.title("任务队列")
    view = api_get("/api/tasks")
    if view is not None:
        tab_pending, tab_completed = st.tabs(["待处理任务", "已完成任务"])
        with tab_pending:
            pending = view.get("pendingTasks", [])
            if pending:
                df = pd.DataFrame([{
                    "ID": t["id"],
                    "标题": t["title"],
                    "优先级": PRIORITY_LABELS.get(t["priority"], t["priority"]),
                    "截止时间": t["deadline"],
                    "描述": t["description"],
                    "预期结果": t["expected"],
                    "附件": ", ".join(a["displayName"] for a in t["attachments"]),
                } for t in pending])
                gb = GridOptionsBuilder.from_dataframe(df)
                gb.configure_pagination(paginationAutoPageSize=True)
                gb.configure_default_column(editable=False, groupable=True)
                gb.configure_selection("single")
                grid_response = AgGrid(
                    df,
                    gridOptions=gb.build(),
                    update_mode=GridUpdateMode.SELECTION_CHANGED,
                    fit_columns_on_grid_load=True,
                    theme="alpine",
                    enable_enterprise_modules=False,
                )
                selected = grid_response["selected_rows"]
                if isinstance(selected, pd.DataFrame):
                    selected = selected.to_dict("records")
                if selected:
                    task = next((t for t in pending if t["id"] == selected[0]["ID"]), None)
                    if task:
                        st.markdown(f"---\n**{task['title']}**\n\n{task['description']}")
                        if task["notes"]:
                            st.caption(f"备注: {task['notes']}")
                        for att in task["attachments"]:
                            st.write(f"[{att['displayName']}]({API_URL}/api/files/{quote(att['storageName'])})")
            else:
                st.info("暂无待处理任务。")
        with tab_completed:
            completed = view.get("completedTasks", [])
            if completed:
                df = pd.DataFrame([{
                    "标题": t["title"],
                    "优先级": PRIORITY_LABELS.get(t["priority"], t["priority"]),
                    "完成时间": t["completedTime"],
                    "交付物": "; ".join(t["deliverables"]),
                    "技术实现": "; ".join(t["techImplementation"]),
                } for t in completed])
                gb = GridOptionsBuilder.from_dataframe(df)
                gb.configure_pagination(paginationAutoPageSize=True)
                gb.configure_default_column(editable=False)
                AgGrid(df, gridOptions=gb.build(), fit_columns_on_grid_load=True, theme="alpine")
            else:
                st.info("暂无已完成任务。")

    with st.expander("原始 inbox.md"):
        raw = api_get("/api/inbox")
        if raw is not None:
            st.code(raw, language="markdown")

# ========== 文件管理页面 ==========
elif page == "文件管理":
    st.title("文件管理")
    if st.button("🔄 刷新文件列表"):
        st.rerun()
    files = api_get("/api/files")
    if files:
        for f in files:
            size_kb = (f.get("sizeBytes") or 0) / 1024
            st.write(f"{f['displayName']} ({size_kb:.1f} KB) [下载]({API_URL}/api/files/{quote(f['storageName'])})")
    elif files is not None:
        st.info("暂无上传文件。")
