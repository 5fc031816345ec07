import sys
import typing as tp

from tqdm import tqdm

BOLD="\033[1m"
RESET="\033[0m"
RED="\033[31m"
GREEN="\033[32m"
ORANGE="\033[33m"
LIGHT_GRAY="\033[37m"

def fatal(message:str="",exit_code:int=1)->tp.NoReturn:
    " print an error that ends the whole invocation, then exit "
    stream=sys.stderr
    if stream.isatty():
        message=f"{RED}{message}{RESET}"
    _=stream.write(f"Error: {message}\n")
    _=stream.flush()

    sys.exit(exit_code)

class Log:
    """
    diagnostic sink shared by everything that reports progress or problems

    info and trace lines go to `out`, errors and warnings go to `err`. both may be the same stream (e.g. a log file).
    all writes go through tqdm.write, so that an active progress bar is not torn apart.
    """

    def __init__(self,
        out:tp.TextIO|None=None,
        err:tp.TextIO|None=None,
        verbose:bool=False,
        plus_verbose:bool=False,
        super_verbose:bool=False,
    ):
        self.out:tp.TextIO=out if out is not None else sys.stdout
        self.err:tp.TextIO=err if err is not None else sys.stderr

        self.verbose=verbose or plus_verbose or super_verbose
        self.plus_verbose=plus_verbose
        self.super_verbose=super_verbose

        self.num_errors=0
        self.num_warnings=0

    def _write(self,stream:tp.TextIO,message:str,color:str|None=None):
        if color is not None and stream.isatty():
            message=f"{color}{message}{RESET}"
        tqdm.write(message,file=stream)

    def info(self,message:str):
        self._write(self.out,message)

    def trace(self,message:str):
        " only shown in super verbose mode "
        if self.super_verbose:
            self._write(self.out,message,LIGHT_GRAY)

    def warn(self,message:str):
        self.num_warnings+=1
        self._write(self.err,message,ORANGE)

    def error(self,message:str):
        self.num_errors+=1
        self._write(self.err,message,RED)

    def detail(self,message:str):
        " context for the following error or warning (e.g. the source line), not counted "
        self._write(self.err,message)

    def flush(self):
        self.out.flush()
        if self.err is not self.out:
            self.err.flush()

T=tp.TypeVar("T")
class Iter(tp.Generic[T]):
    """
    cursor over an indexable, growable container

    the container may be modified while the cursor is alive (see `splice`), the cursor is just an index into it
    """
    def __init__(self,container:list[T],initial_index:int=0):
        self.container=container
        self.index=initial_index

    @property
    def item(self)->T:
        return self.container[self.index]

    def __len__(self)->int:
        return len(self.container)

    @property
    def empty(self)->bool:
        "return True if the index of the current element exceeds the container size"
        return self.index>=len(self)

    @property
    def remaining(self)->bool:
        return not self.empty

    def next(self)->T:
        "return the current item and advance past it"
        ret=self.item
        self.index+=1
        return ret

    def back(self,n:int=1):
        "step back over the last n items"
        assert self.index-n>=0, f"{self.index=} {n=}"
        self.index-=n

    @property
    def previous(self)->T:
        return self.container[self.index-1]

    def splice(self,at:int,items:list[T]):
        "replace the single item at index `at` by `items` (which may be empty), without moving the cursor"
        self.container[at:at+1]=items
