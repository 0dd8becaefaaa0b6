# modproxy

Building blocks for a caching proxy that speaks the Go module download
protocol. The package covers:

- **`modproxy.config`** – the proxy configuration: defaults, loading from a
  TOML file, overrides from environment variables and validation. Helpers
  such as `package_versioned_name`, `fmt_mod_ver` and
  `module_version_from_path` build and split storage paths.
- **`modproxy.mode`** – download modes (`sync`, `async`, `redirect`,
  `async_redirect`, `none`) that decide what happens when a module version
  is not yet in storage, with per-pattern overrides read from an HCL-style
  download file.
- **`modproxy.protocol`** – the download protocol itself: listing versions,
  fetching `.info`, `.mod` and `.zip` data, and resolving `@latest`, with
  `strict`, `offline` and `fallback` network modes.
- **`modproxy.pool`** – a wrapper that runs protocol calls on a fixed number
  of worker threads.
- **`modproxy.handlers`** – WSGI handlers for the protocol endpoints
  (`/{module}/@v/list`, `/{module}/@latest`, `/{module}/@v/{version}.info`,
  `.mod` and `.zip`) and a small `Router`.
- **`modproxy.actions`** – the remaining endpoints: health and readiness,
  the home page, `robots.txt`, the catalog and index listings, checksum
  database proxying with "no sum" patterns, and HTTP basic authentication.
- **`modproxy.auth`** – placing `.netrc` / `.hgrc` files in a home directory
  so the fetcher can reach private repositories.
- **`modproxy.shutdown`** – the signals that trigger a clean shutdown on the
  current platform.

## Configuration

```python
from modproxy import config

cfg = config.default_config()
print(cfg.port)                 # ":3000"
print(cfg.timeout_duration())   # five minutes

cfg = config.load("proxy.toml") # file values, then environment overrides
config.validate_config(cfg)
```

Environment variables override what the file sets. `GoBinaryEnvVars` can be
given as one variable holding several `KEY=VALUE` assignments separated by
semicolons:

```python
from modproxy.config import EnvList

env = EnvList(["GOPROXY=direct"])
env.decode("GOPROXY=off; GOPRIVATE=example.com/*")
env.has_key("GOPRIVATE")   # True
```

## Download modes

```python
from modproxy.mode import new_file

df = new_file("redirect", "https://proxy.example.com")
df.match("example.com/some/module")   # the mode that applies
df.url("example.com/some/module")     # where to redirect
```

A mode may also be `file:/path/to/download.hcl` or `custom:<base64 HCL>`,
in which case download blocks with glob patterns choose the mode per
module; the first matching pattern wins and the top-level mode is the
fallback.

## Serving

`modproxy.protocol.new_protocol` assembles the protocol from a storage
backend, a stasher and an upstream lister; `modproxy.pool.with_pool` limits
how many requests run at once; `modproxy.handlers.register_handlers` mounts
the protocol endpoints on a `Router`, which is a WSGI application and can be
served by any WSGI server.

## Tests

The test suite uses pytest; the `test` extra lists what it needs.