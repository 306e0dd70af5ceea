"""Engine-side R source sent over the text channel.

The helpers below are installed once per session into the ``.RBridge``
environment. Templates use ``@NAME@`` placeholders because R source is full of
braces, dollars and percent signs.
"""

from __future__ import annotations

from .codec import RType

SNIPPET_VERSION = 1

ENV = ".RBridge"
EVAL_FLAG = "RBRIDGE.EVAL.FLAG"

TEST_STRING = f"{ENV}$test.string"
TEST_RESULT = f"{ENV}$test.result"
ASSIGN_TEST_STRING = f"{ENV}$assign.test.string"
PARSEABLE = f"{ENV}$parseable"
ASSIGNABLE = f"{ENV}$assignable"

CREATE_ENV = f'assign("{ENV}", new.env(), envir = globalenv())'
ERROR_HANDLER = "options(error = dump.frames)"
QUIT = "q(save = 'no')"
CLOSE_SOCKET = f"close({ENV}$socket); {ENV}$socket <- NULL"

_SOCKET_IO = """\
.RBridge$socket <- NULL
.RBridge$session <- function(f) {
  invisible(f(.RBridge$socket))
}
.RBridge$session.write <- function(writer) {
  .RBridge$session(function(con) {
    writer(function(v, ...) {
      invisible(lapply(list(v, ...), function(v2) {
        writeBin(v2, con, endian = "@ENDIAN@")
      }))
    })
  })
}
.RBridge$session.read <- function(reader) {
  .RBridge$session(function(con) {
    reader(function(vtype, len) {
      invisible(readBin(con, vtype(), len, endian = "@ENDIAN@"))
    }, function(bytes) {
      invisible(readChar(con, bytes, useBytes = TRUE))
    })
  })
}"""

_ASSIGN = """\
.RBridge$assign <- function(var) {
  expr <- parse(text = paste0(var, " <- .RBridge$.value"))
  invisible(function(.value) {
    on.exit(.RBridge$.value <- NULL)
    .RBridge$.value <- .value
    invisible(eval(expr, envir = globalenv()))
  })
}
.RBridge$assign.test.string <- .RBridge$assign(".RBridge$test.string")
.RBridge$get_value <- function() {
  .RBridge$session.read(function(read, readchar) {
    getv <- function() {
      type <- read(integer, 1)
      if (type == @T_MATRIX@L) {
        dims <- read(integer, 2)
        return(matrix(getv(), nrow = dims[1], ncol = dims[2], byrow = TRUE))
      }
      len <- read(integer, 1)
      value <- NULL
      if (type == @T_LOGICAL@L) {
        value <- read(logical, len)
      } else if (type == @T_INTEGER@L) {
        value <- read(integer, len)
      } else if (type == @T_DOUBLE@L) {
        value <- read(double, len)
        value[read(integer, read(integer, 1)) + 1L] <- NA
      } else if (type == @T_CHARACTER@L) {
        value <- character(len)
        for (i in seq_len(len)) {
          nbytes <- read(integer, 1)
          value[[i]] <- if (nbytes > 0L) readchar(nbytes) else if (nbytes == 0L) "" else NA_character_
        }
      }
      value
    }
    getv()
  })
}"""

_PULL = """\
.RBridge$pull <- function(var) {
  .RBridge$session.write(function(write) {
    put <- function(var) {
      if (is.matrix(var)) {
        write(@T_MATRIX@L, as.integer(nrow(var)), as.integer(ncol(var)))
        put(as.vector(t(var)))
      } else if (is.logical(var)) {
        write(@T_LOGICAL@L, as.integer(length(var)), as.integer(var))
      } else if (is.integer(var)) {
        write(@T_INTEGER@L, as.integer(length(var)), as.vector(var))
      } else if (is.double(var)) {
        na <- which(is.na(var) & !is.nan(var)) - 1L
        write(@T_DOUBLE@L, as.integer(length(var)), as.vector(var), length(na), as.integer(na))
      } else if (is.character(var)) {
        write(@T_CHARACTER@L, as.integer(length(var)))
        for (s in var) {
          if (is.na(s)) {
            write(NA_integer_)
          } else {
            write(nchar(s, type = "bytes"), charToRaw(s))
          }
        }
      } else {
        d <- paste(class(var), collapse = "/")
        write(@T_UNKNOWN@L, nchar(d, type = "bytes"), charToRaw(d))
      }
    }
    if (inherits(var, "try-error")) {
      write(@T_NOT_FOUND@L)
    } else {
      put(var)
    }
  })
}"""

_CHECK = """\
.RBridge$parseable <- function(var) {
  src <- srcfilecopy("<text>", lines = var, isFile = FALSE)
  parsed <- try(parse(text = var, srcfile = src, keep.source = TRUE), silent = TRUE)
  res <- function() {
    eval(parsed, envir = globalenv())
  }
  status <- if (inherits(parsed, "try-error")) {
    attributes(res)$parse.data <- getParseData(src)
    0L
  } else {
    1L
  }
  .RBridge$session.write(function(write) {
    write(status)
  })
  invisible(res)
}
.RBridge$last.parse.data <- function(data) {
  if (is.null(data) || nrow(data) == 0L) {
    c(0L, 0L, 0L)
  } else {
    endline <- data[max(data$line2) == data$line2, ]
    last.item <- endline[max(endline$col2) == endline$col2, ]
    as.integer(c(last.item$line2[1], last.item$col2[1], any(last.item$token == "';'")))
  }
}
.RBridge$assignable <- function(var) {
  target <- try(parse(text = var), silent = TRUE)
  status <- if (inherits(target, "try-error")) {
    -1L
  } else if (length(target) != 1L) {
    0L
  } else {
    tryCatch({
      probe <- parse(text = paste0(var, " <- 1"))
      stopifnot(length(probe) == 1L)
      eval(probe[[1L]], envir = new.env(parent = globalenv()))
      1L
    }, error = function(e) 0L)
  }
  .RBridge$session.write(function(write) {
    write(status)
  })
  if (status == 1L) invisible(.RBridge$assign(var)) else invisible(NULL)
}"""


def render(template: str, **values: object) -> str:
    """Substitute ``@NAME@`` placeholders in an R template."""
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace(f"@{key.upper()}@", str(value))
    return rendered


def _type_tags() -> dict[str, int]:
    return {f"t_{rtype.name.lower()}": int(rtype) for rtype in RType}


def bootstrap(byte_order: str) -> list[str]:
    """Helper definitions sent once at session start, in order."""
    tags = _type_tags()
    return [
        CREATE_ENV,
        render(_SOCKET_IO, endian=byte_order),
        render(_ASSIGN, **tags),
        render(_PULL, **tags),
        _CHECK,
    ]


def connect_socket(hostname: str, port: int) -> str:
    return f'{ENV}$socket <- socketConnection("{hostname}", {port}, blocking = TRUE, open = "r+b")'


def assign_call(fun: str) -> str:
    return f"{fun}({ENV}$get_value())"


def pull_call(expr: str) -> str:
    return f"{ENV}$pull(try({expr}, silent = TRUE))"


def probe_call(check: str) -> str:
    return f"{TEST_RESULT} <- {check}({TEST_STRING})"


def eval_call() -> str:
    return f"{TEST_RESULT}()"


def last_parse_data() -> str:
    return f'{ENV}$last.parse.data(attr({TEST_RESULT}, "parse.data"))'


def eval_block(expr: str, run: int) -> str:
    """Code plus the completion sentinel for run number ``run``."""
    return f"{{{expr}}}\nprint('{EVAL_FLAG}.{run}')\n"


def redirect_messages(to_stdout: bool) -> str:
    if to_stdout:
        return "sink(stdout(), type = 'message')"
    return "sink(type = 'message')"
