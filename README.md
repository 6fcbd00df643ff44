# cqhub

`cqhub` is a library for the pieces around a cloud asset inventory:

- **Provider registry** (`cqhub.hub`) finds provider plugin binaries already on disk. It downloads missing ones from their release pages and checks each download against an OpenPGP-signed checksums file.
- **Verification** (`cqhub.validate`) computes SHA-256 digests, matches them against checksums files and verifies detached RSA OpenPGP signatures. It does this in pure Python.
- **Policy execution** (`cqhub.executor`) runs SQL policies over any DB-API connection. It creates the policies' temporary views first, then runs each policy's queries, walking into nested sub-policies, and collects whether every check passed.
- **Policy hub** (`cqhub.policy_manager`) parses policy references of the form `[organization/]repository[@tag] [path]`. It clones the policy repositories with `git` and checks out the requested or newest version tag before running them.
- **Console feedback** (`cqhub.ui`, `cqhub.console_progress`) prints coloured messages and text progress bars on a terminal, and writes log lines otherwise.

## Provider names

A provider is named either by its own name or as `organization/name`. The organization defaults to `cloudquery` and is always lower-cased.

```python
from cqhub.organization import parse_provider_name

parse_provider_name("aws")          # ("cloudquery", "aws")
parse_provider_name("MyOrg/aws")    # ("myorg", "aws")
parse_provider_name("a/b/c")        # raises ValueError
```

## Checksums and signatures

A checksums file holds one `<sha256>  <file name>` entry per line, with two spaces between the fields. The entry for the running platform is the first one whose file name contains both the OS name (`linux`, `darwin`, `windows`, ...) and the architecture name (`amd64`, `arm64`, ...).

```python
from cqhub.validate import sha256_file, validate_checksum_provider, validate_file, ValidationError

digest = sha256_file("plugins/cloudquery/aws/v0.5.0-linux_amd64")
try:
    validate_checksum_provider(
        "plugins/cloudquery/aws/v0.5.0-linux_amd64",
        "plugins/cloudquery/aws/v0.5.0.checksums.txt",
    )  # returns the verified digest
    key_id = validate_file(
        "plugins/cloudquery/aws/v0.5.0.checksums.txt",
        "plugins/cloudquery/aws/v0.5.0.checksums.txt.sig",
        "keys/release-signing.asc",
    )  # returns the hex key ID of the signing key
except ValidationError as exc:
    print("provider rejected:", exc)
```

`validate_file` reads an ASCII-armored public keyring. It accepts binary or armored version 4 signatures of type binary or text, made with an RSA key over SHA-1, SHA-224, SHA-256, SHA-384 or SHA-512. A tampered file, an unknown signer or an unsupported format raises `ValidationError`.

No signing key ships with the package. Supply your own keyring file.

## Providers on disk and downloads

`Hub` is a dataclass. Its fields are:

| Field | Default | Meaning |
|---|---|---|
| `url` | required | Registry lookup URL, a `%`-format string with two `%s` placeholders for organization and provider |
| `plugin_directory` | `./.cq/providers` | Where provider binaries are stored |
| `progress_updater` | `None` | Optional `cqhub.ui.Progress` that receives progress updates |
| `logger` | module logger | Logger used for messages |
| `keyring_path` | `None` | Keyring used to verify checksum signatures |

When it is created, the hub scans `plugin_directory`, which is laid out as `<organization>/<name>/<version>-<os>_<arch>`. It registers every provider it finds there. It skips checksum files and deletes leftover `*.tmp` files.

```python
from cqhub.hub import Hub, RequiredProvider, HubError, get_binary_suffix, plugin_binary_name

get_binary_suffix()          # e.g. "linux_amd64" (".exe" appended on Windows)
plugin_binary_name("aws")    # e.g. "cq-provider-aws_linux_amd64"

hub = Hub(
    url="https://registry.example.com/orgs/%s/providers/%s",
    plugin_directory="plugins",
    keyring_path="keys/release-signing.asc",
)
details = hub.get_provider("aws", "latest")   # highest valid version on disk, or HubError
details = hub.download_provider(RequiredProvider("cloudquery/aws", "v0.5.0"), no_verify=False)
print(details.file_path)
```

`download_provider` works as follows:

1. It resolves `"latest"` through the release API.
2. It checks that the provider answers `200` at the registry URL. This step is skipped when `no_verify` is true.
3. It downloads the binary through a temporary `.tmp` file.
4. It verifies the signed checksums.
5. It makes the binary executable (`0o754`).

A provider that is already on disk is only re-verified, or not verified at all with `no_verify=True`. Providers outside the `cloudquery` organization skip checksum verification. Failures raise `HubError`.

## Running policies

An `Executor` wraps a DB-API connection. It needs only `cursor()`, and from the cursor `execute`, `description`, `fetchall` and `close`. It runs `PolicyConfig` trees built from `Query` and `View` objects.

```python
from cqhub.executor import Executor, ExecuteRequest, PolicyConfig, Query, View, policy_path_join

policy = PolicyConfig(
    name="test-policy",
    views=[View(name="johns", query=Query(name="get-john", query="SELECT * FROM people WHERE name = 'john'"))],
    queries=[Query(name="has-john", query="SELECT * FROM johns", expect_output=True)],
)
result = Executor(conn).execute_policy(ExecuteRequest(), policy)
result.passed                               # True if every check passed
result.results["test-policy/has-john"].to_dict()

policy_path_join("test-policy", "sub-policy-1", "sub-level-query")
# "test-policy/sub-policy-1/sub-level-query"
```

The rules for a run are:

- A query with `expect_output=True` passes when it returns rows. Any other query passes when it returns none.
- Views are created as `CREATE OR REPLACE TEMPORARY VIEW <name> AS <query>` before any query runs.
- Results are keyed by slash-joined policy paths.
- If `update_callback` is set, it is called with each query's description and pass state.
- With `stop_on_failure=True`, a policy stops at its first failing query, and `execute_policy` returns `None`.
- Errors from queries or views are raised as `PolicyExecutionError`, with `"<policy> - <element>: "` in front of the message.

## The policy hub

`PolicyManager(policy_directory, connect=None, logger=None, loader=None, git_base_url=...)` works with a local policy directory. Its `connect` argument is a callable that returns a DB-API connection. The connection is closed after each run.

1. `parse_policy_hub_path(["cloudquery/cq-policy-core", "test"], "")` returns a `HubPolicy` with organization, repository, optional `@tag` version, repository path and sub path. Without an organization, `cloudquery-policies` is used.
2. `download_policy(policy)` runs `git clone` into `<policy_directory>/<organization>/<repository>`. A repository that is already present is left as it is.
3. `run_policy(ExecuteRequest(policy=hub_policy, ...))` does the following:
   - It fetches tags and checks out the requested tag, or the highest tag that parses as a version. This step is skipped with `skip_versioning=True`.
   - It looks for `policy.hcl`, then `policy.json`.
   - It loads the policies and runs all of them, or only the sub-policy or `policy/query` named by the sub path.

Failures raise `PolicyManagerError`. `HubPolicy.github_url()` gives the clone URL. `traverse_policies` builds the path-to-policy map used for sub paths. Git operations need a `git` executable on `PATH`.

The built-in loader reads JSON policy files shaped like this:

```json
{"policies": [{"name": "test-policy",
               "views": [{"name": "v", "query": {"query": "SELECT 1"}}],
               "queries": [{"name": "top-level-query", "query": "SELECT 1 WHERE false"}],
               "policies": [{"name": "sub-policy-1", "queries": []}]}]}
```

For a `policy.hcl` file, the built-in loader raises `PolicyManagerError`. To support other formats, pass a `loader` callable that takes the file path and returns a list of `PolicyConfig`, or `None`.

## Console output

- `cqhub.ui.colorized_output(COLOR_PROGRESS, "Cloning %s\n", name)` prints in colour on a terminal. Otherwise it logs the message without newlines. `set_console_log(True)` forces the logging path.
- `cqhub.ui.Progress` is the abstract progress interface. `create_progress_updater` wraps a download stream so that reading from it advances a bar.
- `cqhub.console_progress.ConsoleProgress` implements `Progress` with text bars. Each bar shows a status symbol, a name, a message, the elapsed time and a `[=>-]` bar. `render()` returns the current display, and `wait()` writes it out.

## What this package does not do

- It has no command-line program.
- It does not read configuration files.
- It does not start or talk to provider plugin processes; it only places and verifies their binaries.
- It does not fetch resources from cloud accounts or build database tables.
- Its only built-in policy file parser is for JSON.

## Development

The tests use `pytest` and `responses`. Install them with the `test` extra and run `pytest`.