"""Page parsing – pull links and submission fields out of site HTML."""

from __future__ import annotations

import re
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .models import Comment, SubmissionMetadata

DELETED_MESSAGE = "The submission you are trying to find is not in our database."

_TAG_RE = re.compile(r"[A-Za-z]\w+")
_VIEW_RE = re.compile(r"/view/([^/?#]+)")


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def normalize_url(url: str | None, base_url: str = "https://www.furaffinity.net") -> str | None:
    """Make protocol-relative and root-relative links absolute."""
    if not url:
        return url
    if url.startswith("//"):
        return "https:" + url
    if url.startswith("/"):
        return urljoin(base_url + "/", url)
    return url


def _text(el: Tag | None) -> str:
    return el.get_text().strip() if el is not None else ""


def _date_of(el: Tag | None) -> str:
    """Prefer the absolute date in the title attribute over "N days ago"."""
    if el is None:
        return ""
    date = str(el.get("title", "")).strip()
    if not date or re.search(r"ago$", date, re.I):
        date = _text(el)
    return date


# ── listings ─────────────────────────────────────────────────────


def extract_gallery_links(doc: BeautifulSoup, base_url: str) -> list[str]:
    """Submission links on a gallery, scraps or favorites page, in page order."""
    links: list[str] = []
    for a in doc.select('figcaption a[href^="/view"]'):
        url = urljoin(base_url + "/", str(a["href"]))
        if url not in links:
            links.append(url)
    return links


def next_page_url(doc: BeautifulSoup, base_url: str) -> str | None:
    """The favorites cursor; None when this is the last page."""
    a = doc.select_one(".pagination a.right")
    if a is None or not a.get("href"):
        return None
    return urljoin(base_url + "/", str(a["href"]))


# ── submission detail page ───────────────────────────────────────


def is_deleted_page(doc: BeautifulSoup) -> bool:
    body = doc.select_one(".section-body")
    return body is not None and DELETED_MESSAGE in body.get_text()


def has_submission(doc: BeautifulSoup) -> bool:
    return doc.select_one(".submission-title") is not None


def submission_id_from_url(url: str) -> str:
    match = _VIEW_RE.search(url)
    if match is None:
        raise ValueError(f"Not a submission url: {url}")
    return match.group(1)


def extract_thumbnail_url(doc: BeautifulSoup, base_url: str = "https://www.furaffinity.net") -> str | None:
    """Inline preview image shown on text and music submissions."""
    img = doc.select_one(
        ".page-content-type-text #submissionImg, .page-content-type-music #submissionImg"
    )
    if img is None or not img.get("src"):
        return None
    return normalize_url(str(img["src"]), base_url)


def extract_submission(doc: BeautifulSoup, url: str, base_url: str) -> SubmissionMetadata:
    username = _text(doc.select_one(".submission-title + a")).lower()
    description = doc.select_one(".submission-description")
    tags = _TAG_RE.findall(_text(doc.select_one(".tags-row")))
    download = doc.select_one(".download > a")
    content_url = normalize_url(str(download["href"]), base_url) if download and download.get("href") else None
    rating = doc.select_one(".rating .rating-box")

    return SubmissionMetadata(
        id=submission_id_from_url(url),
        title=_text(doc.select_one(".submission-title")),
        description=description.decode_contents().strip() if description else "",
        tags=",".join(tags) if tags else None,
        username=username,
        account_name=username.replace("_", ""),
        content_url=content_url,
        content_name=content_url.rsplit("/", 1)[-1] if content_url else None,
        thumbnail_url=extract_thumbnail_url(doc, base_url),
        date_uploaded=_date_of(doc.select_one(".submission-id-sub-container .popup_date")),
        rating=_text(rating),
        category=_text(doc.select_one(".info.text > div > div")),
    )


def extract_comments(doc: BeautifulSoup, submission_id: str) -> list[Comment]:
    comments: list[Comment] = []
    for div in doc.select("#comments-submission .comment_container"):
        anchor = div.select_one(".comment_anchor")
        if anchor is None or not anchor.get("id"):
            continue
        container = div.select_one("comment-container")
        deleted = container is not None and "deleted-comment-container" in (container.get("class") or [])
        if deleted:
            comments.append(Comment(id=str(anchor["id"]), submission_id=submission_id, width=div.get("style")))
            continue
        username = _text(div.select_one("comment-username"))
        body = div.select_one("comment-user-text .user-submitted-links")
        comments.append(
            Comment(
                id=str(anchor["id"]),
                submission_id=submission_id,
                username=username,
                account_name=username.replace("_", ""),
                width=div.get("style"),
                description=body.decode_contents().strip() if body else "",
                subtitle=_text(div.select_one("comment-title")),
                date=_date_of(div.select_one("comment-date > span")),
            )
        )
    return comments
