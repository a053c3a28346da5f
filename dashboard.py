"""
📊 SETTLEMENT P&L DASHBOARD
===========================
Interactive dashboard over stored settlement analyses: monthly P&L, top
products, leaderboard, diagnostics and order filters for one explicitly
selected upload.
Includes authentication for secure access to sensitive business data
"""

import hashlib
import os
import traceback
import warnings

import pandas as pd
import plotly.graph_objects as go
import streamlit as st
from dotenv import load_dotenv
from plotly.subplots import make_subplots

from settlement_config import LEADERBOARD_TOP_N, MARKETPLACE_ALIASES, SUMMARY_TABLES
from settlement_pnl import leaderboard, monthly_report
from settlement_spreadsheets import workbook_bytes
from settlement_store import run_with_store
from settlement_views import filter_options, filter_orders, list_results, result_summary, sheet_rows

warnings.filterwarnings('ignore')

# Load environment variables
load_dotenv()


# Authentication configuration
def get_credentials():
    """Get credentials from environment variables or use defaults"""
    username = os.getenv('DASHBOARD_USERNAME', 'admin')
    password = os.getenv('DASHBOARD_PASSWORD', 'changeme123')
    return {username: hash_password(password)}


def hash_password(password):
    """Hash a password using SHA-256"""
    return hashlib.sha256(password.encode()).hexdigest()


def check_authentication():
    """Check if user is authenticated"""
    if 'authenticated' not in st.session_state:
        st.session_state.authenticated = False
    return st.session_state.authenticated


def login_page():
    """Display login page"""
    st.markdown('<h1 class="main-header">🔐 Settlement P&L Dashboard</h1>', unsafe_allow_html=True)
    st.markdown("---")

    col1, col2, col3 = st.columns([1, 2, 1])

    with col2:
        st.markdown("### 🔒 Please Login to Continue")
        st.markdown("Access to this dashboard requires authentication due to sensitive business data.")

        with st.form("login_form"):
            username = st.text_input("👤 Username", placeholder="Enter your username")
            password = st.text_input("🔑 Password", type="password", placeholder="Enter your password")
            submit = st.form_submit_button("🚀 Login", use_container_width=True)

            if submit:
                if username and password:
                    credentials = get_credentials()
                    if username in credentials and credentials[username] == hash_password(password):
                        st.session_state.authenticated = True
                        st.session_state.username = username
                        st.success("✅ Login successful! Redirecting...")
                        st.rerun()
                    else:
                        st.error("❌ Invalid username or password")
                else:
                    st.warning("⚠️ Please enter both username and password")

        st.markdown("---")
        st.info("""
        **🔐 Security Notice:**
        - Set custom credentials in your `.env` file (or run `python setup_auth.py`)
        - Add: `DASHBOARD_USERNAME=your_username`
        - Add: `DASHBOARD_PASSWORD=your_secure_password`
        """)


def logout():
    """Logout the user"""
    st.session_state.authenticated = False
    if 'username' in st.session_state:
        del st.session_state.username
    st.rerun()


# Page configuration
st.set_page_config(
    page_title="Settlement P&L Dashboard",
    page_icon="📊",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
<style>
    .main-header {
        font-size: 3rem;
        font-weight: bold;
        color: #1f77b4;
        text-align: center;
        padding: 1rem 0;
        background: linear-gradient(90deg, #667eea 0%, #764ba2 100%);
        -webkit-background-clip: text;
        -webkit-text-fill-color: transparent;
    }
    .stMetric {
        background-color: #f0f2f6;
        padding: 1rem;
        border-radius: 8px;
        box-shadow: 0 2px 4px rgba(0,0,0,0.05);
    }
</style>
""", unsafe_allow_html=True)


def create_pnl_chart(months_df: pd.DataFrame):
    """Monthly sales / COGS / net profit with margin lines"""
    if months_df.empty:
        return go.Figure().add_annotation(text="No data available", showarrow=False)

    df = months_df.sort_values('month')
    fig = make_subplots(specs=[[{"secondary_y": True}]])

    fig.add_trace(go.Bar(x=df['month'], y=df['sales'], name='Sales', marker_color='#667eea'), secondary_y=False)
    fig.add_trace(go.Bar(x=df['month'], y=df['cogs'], name='COGS', marker_color='#f5576c'), secondary_y=False)
    fig.add_trace(go.Bar(x=df['month'], y=df['net_profit'], name='Net Profit', marker_color='#43e97b'), secondary_y=False)
    fig.add_trace(
        go.Scatter(x=df['month'], y=df['gross_margin_pct'], name='Gross Margin %', line=dict(color='#764ba2', width=3)),
        secondary_y=True
    )
    fig.add_trace(
        go.Scatter(x=df['month'], y=df['refund_pct'], name='Refund %', line=dict(color='#fa709a', width=2, dash='dot')),
        secondary_y=True
    )

    fig.update_layout(title="Monthly P&L", title_font_size=20, barmode='group', height=500, hovermode='x unified')
    fig.update_yaxes(title_text="Amount", secondary_y=False)
    fig.update_yaxes(title_text="%", secondary_y=True)
    return fig


def create_top_products_chart(rows, metric: str, title: str):
    """Horizontal bar chart of ranked SKUs"""
    if not rows:
        return go.Figure().add_annotation(text="No data available", showarrow=False)

    df = pd.DataFrame(rows).iloc[::-1]
    fig = go.Figure(
        go.Bar(
            x=df[metric],
            y=df['sku'],
            orientation='h',
            marker=dict(color=df[metric], colorscale='Viridis', showscale=False),
            text=df[metric].round(2),
            textposition='outside',
        )
    )
    fig.update_layout(
        title=title,
        title_font_size=20,
        yaxis=dict(type='category'),
        height=max(400, 28 * len(df)),
        showlegend=False,
    )
    return fig


def display_key_metrics(totals: dict):
    """Display key metrics as cards"""
    if not totals:
        st.warning("No data available for this upload")
        return

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("💰 Sales", f"{totals['sales']:,.2f}")
    with col2:
        st.metric("📦 COGS", f"{totals['cogs']:,.2f}")
    with col3:
        st.metric("📈 Net Profit", f"{totals['net_profit']:,.2f}")
    with col4:
        st.metric("💎 Net Margin", f"{totals['net_margin_pct']:.2f}%")

    col5, col6, col7, col8 = st.columns(4)
    with col5:
        st.metric("🛍️ Orders", f"{totals.get('order_count', 0):,}")
    with col6:
        st.metric("🔢 Units Sold", f"{totals['units_sold']:,.0f}")
    with col7:
        st.metric("🏷️ Avg Selling Price", f"{totals['average_selling_price']:,.2f}")
    with col8:
        st.metric("↩️ Refunds", f"{totals['refund_count']}", delta=f"-{totals['refund_amount']:,.2f}")


def main():
    """Main dashboard function"""

    if not check_authentication():
        login_page()
        return

    col1, col2 = st.columns([4, 1])
    with col1:
        st.markdown('<h1 class="main-header">📊 Settlement P&L Dashboard</h1>', unsafe_allow_html=True)
    with col2:
        st.markdown(f"**👤 User:** {st.session_state.get('username', 'Unknown')}")

    st.markdown("---")

    st.sidebar.title("⚙️ Dashboard Settings")
    st.sidebar.markdown("---")
    if st.sidebar.button("🚪 Logout", use_container_width=True):
        logout()
    st.sidebar.markdown("---")

    marketplace = st.sidebar.selectbox("🛒 Marketplace", sorted(MARKETPLACE_ALIASES))
    upload_id = None
    result = None

    try:
        files = list_results(run_with_store(lambda store: store.list_results(marketplace)))
        if files:
            labels = {f"{f['filename'] or f['upload_id']} ({f['rows_count']} orders)": f['upload_id'] for f in files}
            selected = st.sidebar.selectbox("📁 Upload", list(labels))
            upload_id = labels[selected]
            st.sidebar.caption(f"Upload id: {upload_id}")
            result = run_with_store(lambda store: store.load_result(upload_id))

    except Exception as e:
        st.error(f"❌ Error loading data: {str(e)}")
        st.info("💡 Make sure DATABASE_URL is configured and the Prisma client is generated.")
        st.code(traceback.format_exc())
        return

    if upload_id is None:
        st.warning(f"⚠️ No analyzed {marketplace} uploads yet.")
        st.info("💡 Run `python settlement_reports.py analyze <upload-id>` first.")
    elif result is None:
        st.error(f"🔍 No analysis found for upload {upload_id}")
    else:
        display_result(result, upload_id)

    # Footer
    st.markdown("---")
    st.markdown("""
    <div style='text-align: center; color: #666; padding: 2rem;'>
        <p>📊 Settlement P&L Dashboard | Built with Streamlit & Plotly</p>
        <p>🔒 Secure access • Protected business data</p>
    </div>
    """, unsafe_allow_html=True)


def display_result(result: dict, upload_id: str):
    """Metrics and report tabs for one stored analysis"""
    orders = result_summary(result)["rows"]
    report = monthly_report(orders)

    st.markdown("## 📊 Key Metrics")
    display_key_metrics(report["totals"])
    st.markdown("---")

    tab1, tab2, tab3, tab4, tab5, tab6 = st.tabs([
        "💰 Monthly P&L",
        "📈 Top Products",
        "🏆 Leaderboard",
        "🔎 Orders",
        "⚠️ Diagnostics",
        "📄 Sheets & Export",
    ])

    with tab1:
        months_df = pd.DataFrame(report["months"])
        st.plotly_chart(create_pnl_chart(months_df), width='stretch')
        st.markdown("### 📋 Monthly Summary")
        if not months_df.empty:
            st.dataframe(months_df, width='stretch', hide_index=True)

    with tab2:
        col1, col2 = st.columns(2)
        with col1:
            st.plotly_chart(
                create_top_products_chart(report["top_by_quantity"], 'quantity', "Top Products by Quantity"),
                width='stretch'
            )
        with col2:
            st.plotly_chart(
                create_top_products_chart(report["top_by_profit"], 'profit', "Top Products by Profit"),
                width='stretch'
            )
        st.caption("Multi-SKU orders are split equally across their SKUs.")

    with tab3:
        metric = st.radio("Rank by", ["quantity", "profit"], horizontal=True)
        board = leaderboard(orders, metric, LEADERBOARD_TOP_N)
        st.plotly_chart(
            create_top_products_chart(board, metric, f"Top {LEADERBOARD_TOP_N} SKUs by {metric}"),
            width='stretch'
        )
        st.dataframe(pd.DataFrame(board), width='stretch', hide_index=True)

    with tab4:
        options = filter_options(result)
        col1, col2, col3 = st.columns(3)
        with col1:
            sku = st.selectbox("SKU", ["All"] + options["skus"])
        with col2:
            order_type = st.selectbox("Type", ["All"] + options["types"])
        with col3:
            date = st.selectbox("Date", ["All"] + options["dates"])

        filtered = filter_orders(
            result,
            sku=None if sku == "All" else sku,
            order_type=None if order_type == "All" else order_type,
            date=None if date == "All" else date,
        )
        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Orders", filtered["count"])
        c2.metric("Sales", f"{filtered['sales']:,.2f}")
        c3.metric("COGS", f"{filtered['cogs']:,.2f}")
        c4.metric("Profit", f"{filtered['profit']:,.2f}")
        st.dataframe(pd.DataFrame(filtered["rows"]), width='stretch', hide_index=True)

    with tab5:
        st.markdown("### 📉 Negative-margin orders")
        st.dataframe(pd.DataFrame(sheet_rows(result, "negative_orders")), width='stretch', hide_index=True)
        st.markdown("### 💸 SKUs without cost")
        st.dataframe(pd.DataFrame(sheet_rows(result, "missing_cost_orders")), width='stretch', hide_index=True)
        st.markdown("### 💤 Inactive master SKUs")
        inactive_summary = sheet_rows(result, "inactive_sku_summary")
        if inactive_summary:
            s = inactive_summary[0]
            st.info(
                f"{s['skus_with_no_orders_in_file']} of {s['total_master_skus']} master SKUs "
                f"({s['percent_inactive']}%) have no orders in this file"
            )
        st.dataframe(pd.DataFrame(sheet_rows(result, "inactive_skus")), width='stretch', hide_index=True)

    with tab6:
        sheet = st.selectbox("Sheet", SUMMARY_TABLES)
        rows = sheet_rows(result, sheet)
        if sheet == "raw_concat":
            rows = [{k: v for k, v in r.items() if k != "raw"} for r in rows]
        st.dataframe(pd.DataFrame(rows), width='stretch', hide_index=True)

        st.download_button(
            "⬇️ Download Excel",
            data=workbook_bytes(result["summary_tables"]),
            file_name=result["filename"] or f"{upload_id}_analyzed.xlsx",
            mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )


if __name__ == "__main__":
    main()
