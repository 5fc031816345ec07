import typing as tp
import os
import sys
from enum import Enum

def get_num_cores()->int:
    """
    get number of logical cores on the host system, minus 1

    returns at least 1
    """

    max_num_cores=os.cpu_count() or 1
    if max_num_cores==1:
        return 1

    # leave 1 core for the system
    return max_num_cores - 1

class ArgError(ValueError):
    " bad command line, e.g. unknown option or missing value "

class ArgStore(str,Enum):
    presence_flag="presence_flag"
    store_value="store_value"
    append_value="append_value"
    " may be given more than once, values are collected into a list "
    optional_value="optional_value"
    " like store_value, but may be given without a value, which then stores an empty string "

class Arg:
    def __init__(self,
        name:str,
        short:tp.Optional[str]=None,
        help:str="",
        default:tp.Optional[tp.Any]=None,
        key:tp.Optional[str]=None,
        type:tp.Type=str,
        arg_store_op:ArgStore=ArgStore.store_value,
        options:tp.Optional[tp.List[tp.Any]]=None
    ):
        self.name=name
        self.short=short
        self.help=help
        self.default=default
        self.key=key or self.name.lstrip("-").replace("-","_")
        self.type=type
        self.arg_store_op=arg_store_op
        if self.arg_store_op==ArgStore.presence_flag and self.default is None:
            self.default=False
        self.options=options

    @property
    def initial_value(self)->tp.Any:
        " value before any argument was seen "
        if self.arg_store_op==ArgStore.append_value:
            return []
        return self.default

    @property
    def usage(self)->str:
        " e.g. '-D --define=value' "
        names=f"{self.short} {self.name}" if self.short else self.name
        match self.arg_store_op:
            case ArgStore.presence_flag:
                return names
            case ArgStore.optional_value:
                return f"{names}[=value]"
            case _:
                return f"{names}=value"

    def convert(self,arg_name:str,arg_value:tp.Optional[str])->tp.Any:
        " turn the text after '=' (None if there was none) into the stored value "
        match self.arg_store_op:
            case ArgStore.presence_flag:
                if arg_value is not None:
                    raise ArgError(f"Argument {arg_name} does not take a value")
                return True
            case ArgStore.optional_value:
                value=self.type(arg_value if arg_value is not None else "")
            case ArgStore.store_value|ArgStore.append_value:
                if arg_value is None:
                    raise ArgError(f"Missing value for argument {arg_name}")
                try:
                    value=self.type(arg_value)
                except ValueError:
                    raise ArgError(f"Invalid value '{arg_value}' for argument {arg_name}")

        if self.options is not None and value not in self.options:
            raise ArgError(f"Invalid value '{value}' for argument {arg_name}, valid values are {self.options}")

        return value

class ArgParser:
    """
    minimal command line parser

    options are given as `--name=value` (or `-n=value`), flags as `--name`. arguments that do not start with a dash are
    collected in order under `positional_key`, if one is set.
    """
    def __init__(self,program_info:str,positional_key:tp.Optional[str]=None):
        self.program_info=program_info
        self.positional_key=positional_key
        self.args:tp.List[Arg]=[]
        self.by_name:tp.Dict[str,Arg]={}

    def add(self,*args,**kwargs):
        arg=Arg(*args,**kwargs)
        for name in (arg.name,arg.short):
            if name is None:
                continue
            if name in self.by_name:
                raise ValueError(f"Duplicate argument name {name}")
            self.by_name[name]=arg

        self.args.append(arg)

    def print_help(self,file:tp.Optional[tp.TextIO]=None):
        if file is None:
            file=sys.stdout

        print(self.program_info,file=file)
        print(file=file)
        print("Arguments:",file=file)

        usages=[arg.usage for arg in self.args]
        longest_usage=max(len(u) for u in usages)
        for usage,arg in zip(usages,self.args):
            print(f"  {usage.ljust(longest_usage)} : {arg.help}",file=file)

            indent=" "*(longest_usage+5)
            if arg.arg_store_op in (ArgStore.store_value,ArgStore.optional_value) and arg.default is not None:
                print(f"{indent}- default: {arg.default}",file=file)
            if arg.options is not None:
                print(f"{indent}- options: {', '.join(str(o) for o in arg.options)}",file=file)

    def parse(self,args:tp.List[str])->dict:
        arg_values={a.key:a.initial_value for a in self.args}
        if self.positional_key is not None:
            arg_values[self.positional_key]=[]

        for a in args:
            if not a.startswith("-") and self.positional_key is not None:
                arg_values[self.positional_key].append(a)
                continue

            # values may contain '=' themselves, e.g. --define=NAME=value
            arg_name,sep,arg_value=a.partition("=")

            arg=self.by_name.get(arg_name)
            if arg is None:
                raise ArgError(f"Unknown arg {a}")

            value=arg.convert(arg_name,arg_value if sep else None)
            if arg.arg_store_op==ArgStore.append_value:
                arg_values[arg.key].append(value)
            else:
                arg_values[arg.key]=value

        return arg_values
