"""Identity link helpers.

A task is linked to an issue by the issue URL in its description, and carries
the issue number as a `[#N]` prefix in its content.
"""
import enum
import re
from dataclasses import dataclass
from typing import Optional

_ISSUE_URL_RE = re.compile(r"github\.com/(?P<owner>[^/\s]+)/(?P<repo>[^/\s]+)/issues/(?P<number>\d+)")
_GITHUB_REF_RE = re.compile(r"github\.com/", re.IGNORECASE)
_CONTENT_PREFIX_RE = re.compile(r"^\[#(?P<number>\d+)\]")
# Also strips legacy [repo#N] / [owner/repo#N] prefixes
_STRIP_PREFIX_RE = re.compile(r"^\[[\w./-]*#\d+\]\s*")


class LinkStatus(str, enum.Enum):
    FOUND = "found"
    ABSENT = "absent"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class IssueLink:
    owner: str
    repo: str
    number: int

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}/issues/{self.number}"

    @property
    def full_repo_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def ref(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


@dataclass(frozen=True)
class LinkParse:
    status: LinkStatus
    link: Optional[IssueLink] = None
    reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status is LinkStatus.FOUND


def parse_issue_url(text: Optional[str]) -> LinkParse:
    """Find a GitHub issue URL in free text.

    ABSENT: nothing GitHub-shaped in the text.
    MALFORMED: mentions github.com but not as an issue URL.
    """
    if not text:
        return LinkParse(LinkStatus.ABSENT)
    m = _ISSUE_URL_RE.search(text)
    if m:
        link = IssueLink(m.group("owner"), m.group("repo"), int(m.group("number")))
        return LinkParse(LinkStatus.FOUND, link=link)
    if _GITHUB_REF_RE.search(text):
        return LinkParse(LinkStatus.MALFORMED, reason="github.com reference is not an issue URL")
    return LinkParse(LinkStatus.ABSENT)


def format_task_content(issue_number: int, title: str) -> str:
    return f"[#{issue_number}] {title}"


def strip_task_prefix(content: Optional[str]) -> str:
    if not content:
        return ""
    return _STRIP_PREFIX_RE.sub("", content)


def extract_issue_number(content: Optional[str]) -> Optional[int]:
    if not content:
        return None
    m = _CONTENT_PREFIX_RE.match(content)
    return int(m.group("number")) if m else None


def issue_url(full_repo_name: str, number: int) -> str:
    return f"https://github.com/{full_repo_name}/issues/{number}"
