"""Shared fixtures: EPUB archives built on the fly with zipfile.

Building the archives by hand (instead of through ebooklib's writer) lets
tests control encodings, manifest quirks and broken structure exactly.
"""

import io
import os
import sys
import zipfile

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import reader_config  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR-fake-image"
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"fake-jpeg"

CONTAINER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="{opf_path}" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""

OPF_TEMPLATE = """<?xml version="1.0" encoding="{declared}"?>
<package xmlns="http://www.idpf.org/2007/opf" version="{version}" unique-identifier="bookid">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/" xmlns:opf="http://www.idpf.org/2007/opf">
    <dc:identifier id="bookid">urn:uuid:12345678-1234-1234-1234-123456789abc</dc:identifier>
    <dc:title>{title}</dc:title>
    <dc:language>en</dc:language>
    <dc:creator>Jane Doe</dc:creator>
    {extra_meta}
  </metadata>
  <manifest>
{items}
  </manifest>
  <spine>
{itemrefs}
  </spine>
</package>
"""

MEDIA_TYPES = {
    ".xhtml": "application/xhtml+xml",
    ".html": "application/xhtml+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".css": "text/css",
}


def chapter_html(body: str, title: str = "Chapter") -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<html xmlns="http://www.w3.org/1999/xhtml">\n'
        f"<head><title>{title}</title></head>\n"
        f"<body>{body}</body>\n"
        "</html>"
    )


def build_epub(chapters, resources=None, title="Test Book", opf_dir="OEBPS",
               cover=None, cover_style="epub3", version="3.0",
               opf_encoding="utf-8", declared_encoding="utf-8",
               extra_spine=()):
    """
    Build EPUB bytes.

    chapters: list of (href, markup str or bytes) in spine order.
    resources: dict of href -> bytes for non-spine files.
    cover: href of a resource to declare as cover.
    extra_spine: idrefs appended to the spine without manifest entries.
    """
    resources = dict(resources or {})
    items, itemrefs = [], []
    files = {}

    for n, (href, markup) in enumerate(chapters):
        item_id = f"chap{n}"
        items.append(f'    <item id="{item_id}" href="{href}" media-type="application/xhtml+xml"/>')
        itemrefs.append(f'    <itemref idref="{item_id}"/>')
        files[href] = markup.encode("utf-8") if isinstance(markup, str) else markup

    extra_meta = ""
    for n, (href, data) in enumerate(resources.items()):
        item_id = f"res{n}"
        media_type = MEDIA_TYPES.get(os.path.splitext(href)[1].lower(), "application/octet-stream")
        props = ""
        if href == cover:
            if cover_style == "epub3":
                props = ' properties="cover-image"'
            else:
                extra_meta = f'<meta name="cover" content="{item_id}"/>'
        items.append(f'    <item id="{item_id}" href="{href}" media-type="{media_type}"{props}/>')
        files[href] = data

    for idref in extra_spine:
        itemrefs.append(f'    <itemref idref="{idref}"/>')

    opf = OPF_TEMPLATE.format(
        declared=declared_encoding,
        version=version,
        title=title,
        extra_meta=extra_meta,
        items="\n".join(items),
        itemrefs="\n".join(itemrefs),
    )
    opf_path = f"{opf_dir}/content.opf" if opf_dir else "content.opf"

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(zipfile.ZipInfo("mimetype"), "application/epub+zip")
        zf.writestr("META-INF/container.xml", CONTAINER_XML.format(opf_path=opf_path))
        zf.writestr(opf_path, opf.encode(opf_encoding))
        for href, data in files.items():
            name = f"{opf_dir}/{href}" if opf_dir else href
            zf.writestr(name, data, compress_type=zipfile.ZIP_DEFLATED)
    return buf.getvalue()


def remove_member(data: bytes, name: str) -> bytes:
    """Copy an EPUB archive without the member `name`."""
    out = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(data)) as src, zipfile.ZipFile(out, "w") as dst:
        for info in src.infolist():
            if info.filename != name:
                dst.writestr(info, src.read(info))
    return out.getvalue()


@pytest.fixture
def make_epub():
    """Factory fixture returning build_epub."""
    return build_epub


@pytest.fixture
def epub_file(tmp_path):
    """Write EPUB bytes to a file and return its path."""
    def _write(data: bytes, name: str = "book.epub") -> str:
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)
    return _write


@pytest.fixture
def sample_epub(make_epub):
    """Two chapters, a nested image folder and an EPUB 3 cover."""
    return make_epub(
        chapters=[
            ("ch1.xhtml", chapter_html('<h1>One</h1><p>First</p><img src="images/pic.png"/>')),
            ("text/ch2.xhtml", chapter_html('<p>Second</p><img src="../images/photo.jpg"/>')),
        ],
        resources={
            "images/pic.png": PNG_BYTES,
            "images/photo.jpg": JPEG_BYTES,
            "images/cover.jpg": JPEG_BYTES,
        },
        cover="images/cover.jpg",
    )


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Keep BOOKLY_* variables and the config singleton out of every test."""
    for name in list(os.environ):
        if name.startswith("BOOKLY_"):
            monkeypatch.delenv(name, raising=False)
    reader_config.reset_config()
    yield
    reader_config.reset_config()
