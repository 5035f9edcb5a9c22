import html
import urllib.parse

from .config import ICON_GLYPHS


def _quote(s):
    # names from os.listdir may carry surrogate escapes for undecodable bytes
    return urllib.parse.quote(s, errors='surrogateescape')


def _href(*segments):
    return '/' + '/'.join(_quote(s) for s in segments if s and s != '.')


def _dir_href(rel_path):
    href = _href(*rel_path.split('/'))
    return href if href == '/' else href + '/'


def render_index(listing, config, query=''):
    """Render the browsing page for a DirectoryListing."""
    rel_path = '' if listing.rel_path == '.' else listing.rel_path
    displaypath = html.escape('/' + rel_path)

    r = []
    r.append('<!DOCTYPE html>')
    r.append('<html lang="en">')
    r.append('<head>')
    r.append('<meta charset="utf-8">')
    r.append('<meta name="viewport" content="width=device-width, initial-scale=1">')
    r.append(f'<title>Kutta: {displaypath}</title>')
    r.append('<link rel="stylesheet" href="/static/app.css">')
    r.append('</head>')
    r.append('<body>')
    r.append('<div class="header">')
    r.append('<h1>Kutta File Server</h1>')
    if config.read_only:
        r.append('<span class="badge">read-only</span>')
    r.append('</div>')

    r.append('<div class="breadcrumb">')
    r.append('<a href="/">Home</a>')
    for part in rel_path.split('/'):
        if part:
            r.append('<span class="breadcrumb-sep">&gt;</span>')
            r.append(f'<span>{html.escape(part)}</span>')
    r.append('</div>')

    r.append('<form class="controls" method="get">')
    r.append(f'<input type="text" id="search" name="q" placeholder="Search files..." value="{html.escape(query, quote=True)}">')
    r.append('<button type="submit" class="btn">Search</button>')
    r.append('</form>')

    if not config.read_only:
        r.append('<form class="upload-form" action="/upload" method="post" enctype="multipart/form-data">')
        r.append('<input type="file" name="file" required>')
        r.append('<button type="submit" class="upload-btn">Upload File</button>')
        r.append('</form>')

    r.append('<form id="bulk-form" action="/bulkdelete" method="post">')
    r.append('<table class="list" id="file-container">')
    r.append('<tr><th></th><th></th><th>Name</th><th>Size</th><th>Modified</th><th></th></tr>')

    if rel_path:
        r.append(f'<tr class="item"><td></td><td>{ICON_GLYPHS["folder"]}</td>'
                 f'<td><a href="{_dir_href(listing.parent_path)}">..</a></td><td></td><td></td><td></td></tr>')

    for entry in listing.entries:
        segments = rel_path.split('/') + [entry.name]
        name = html.escape(entry.name)
        glyph = ICON_GLYPHS.get(entry.icon, ICON_GLYPHS['document'])
        file_rel = '/'.join(s for s in segments if s)

        if entry.is_dir:
            link = _dir_href('/'.join(segments))
            size = ''
        else:
            link = '/files' + _href(*segments)
            size = html.escape(entry.size)

        check = ''
        action = ''
        if not config.read_only and not entry.is_dir:
            value = html.escape(file_rel, quote=True)
            check = f'<input type="checkbox" name="files[]" value="{value}">'
            action = f'<a class="delete" href="/delete?file={_quote(file_rel)}">Delete</a>'

        r.append(f'<tr class="item icon-{entry.icon}" data-name="{html.escape(entry.name.lower(), quote=True)}">'
                 f'<td>{check}</td><td>{glyph}</td><td><a href="{link}">{name}</a></td>'
                 f'<td class="meta">{size}</td><td class="meta">{html.escape(entry.mod_time)}</td><td>{action}</td></tr>')

    r.append('</table>')
    if not config.read_only:
        r.append('<button type="submit" class="btn btn-delete">Delete selected</button>')
    r.append('</form>')

    r.append('<div class="clipboard">')
    r.append('<h3>Clipboard</h3>')
    r.append('<textarea id="clip-text" rows="3"></textarea>')
    r.append('<button type="button" class="btn" onclick="clipAdd()">Add</button>')
    r.append('<button type="button" class="btn" onclick="clipClear()">Clear</button>')
    r.append('<a class="btn" href="/clipboard/export">Export</a>')
    r.append('<ul id="clip-list"></ul>')
    r.append('</div>')

    r.append('<script src="/static/app.js"></script>')
    r.append('</body></html>')
    return '\n'.join(r)
