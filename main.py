import logging
import os
from typing import Optional

from langgraph.graph import StateGraph, START, END
from dotenv import load_dotenv

# Import State
from state import LoanFileState, initial_state

# Import Nodes
from nodes.mailbox_listener import mailbox_intake_node, MailboxConfig
from nodes.extractor import extract_node, ContentExtractor, VisionTranscriber
from nodes.classifier import classifier_node
from nodes.analyzer import analyze_node, DocumentAnalyzer

from loan_storage import LoanStore
from llm_service import LangChainLLMService
from retry import BackoffPolicy

# Load Env
load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_graph(
    store: LoanStore,
    extractor: ContentExtractor,
    analyzer: DocumentAnalyzer,
    mailbox_config: Optional[MailboxConfig] = None,
):
    """
    Constructs the ingestion graph.

    intake -> extract -> classify -> analyze -> END

    Intake is skipped when documents are already in state. The analysis
    lands in state as suggestions; nothing is applied to the checklist.
    """
    builder = StateGraph(LoanFileState)

    # 1. Add Nodes
    builder.add_node("intake", lambda state: mailbox_intake_node(state, store, mailbox_config))
    builder.add_node("extract", lambda state: extract_node(state, extractor))
    builder.add_node("classify", classifier_node)
    builder.add_node("analyze", lambda state: analyze_node(state, analyzer))

    # 2. Add Edges (The Flow)
    # Conditional logic: Were documents handed in directly?
    def route_start(state):
        if state.get("documents"):
            return "extract"
        return "intake"

    builder.add_conditional_edges(START, route_start, ["intake", "extract"])

    # Conditional logic: Did intake find anything?
    def check_intake(state):
        if state.get("documents"):
            return "extract"
        return END

    builder.add_conditional_edges("intake", check_intake, ["extract", END])

    builder.add_edge("extract", "classify")
    builder.add_edge("classify", "analyze")
    builder.add_edge("analyze", END)

    # 3. Compile
    return builder.compile()


def build_default_graph():
    """Graph wired from environment configuration."""
    policy = BackoffPolicy.from_env()
    llm_service = LangChainLLMService()
    extractor = ContentExtractor(ocr=VisionTranscriber(llm_service, policy), policy=policy)
    analyzer = DocumentAnalyzer(llm_service, policy)
    return build_graph(LoanStore(), extractor, analyzer)


if __name__ == "__main__":
    configure_logging()
    app = build_default_graph()

    loan_id = os.getenv("LOAN_ID", "demo-loan")
    logger.info(f"Starting loan document intake for {loan_id}...")
    result = app.invoke(initial_state(loan_id, os.getenv("FUNDER_ID", "")))
    logger.info(f"Finished with status {result.get('status')}")
    for error in result.get("errors", []):
        logger.warning(error)
